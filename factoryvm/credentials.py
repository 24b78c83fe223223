"""Secret generation and the host-side credential record."""

from __future__ import annotations

import secrets
import string
import subprocess
import time
from pathlib import Path
from typing import Dict, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from factoryvm.constants import SECRET_LENGTH
from factoryvm.exceptions import FactoryError
from factoryvm.models import FactoryConfig, Secrets
from factoryvm.utils import atomic_write_text, ensure_directory, hash_password, log, run

_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int = SECRET_LENGTH) -> str:
    """Return a random alphanumeric secret from the OS CSPRNG."""
    if length < 12:
        raise ValueError("secrets shorter than 12 characters are not allowed")
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_secrets(length: int = SECRET_LENGTH) -> Secrets:
    return Secrets(
        root_password=generate_secret(length),
        service_password=generate_secret(length),
        ci_admin_password=generate_secret(length),
    )


def ci_password_hash(password: str) -> str:
    """Format a password the way Jenkins' private realm stores it."""
    return f"#jbcrypt:{hash_password(password)}"


def write_credential_record(path: Path, creds: Secrets, config: FactoryConfig) -> None:
    """Persist all generated secrets to a single owner-only YAML file."""
    ensure_directory(path.parent, mode=0o700)
    record = {
        "generated_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        "vm": {
            "hostname": config.hostname,
            "ssh": f"ssh -p {config.ssh_port} -i {config.ssh_key_path} {config.service_user}@localhost",
            "root_password": creds.root_password,
        },
        "service_account": {
            "user": config.service_user,
            "password": creds.service_password,
            "ssh_key": str(config.ssh_key_path),
        },
        "jenkins": {
            "url": config.public_url,
            "user": config.service_user,
            "password": creds.ci_admin_password,
        },
    }
    header = (
        "# factory-vm credentials. Keep this file private (mode 0600).\n"
        "# Read a value with: python -c \"import yaml,sys; print(yaml.safe_load(open(sys.argv[1]))['jenkins']['password'])\" "
        f"{path}\n"
    )
    atomic_write_text(path, header + yaml.safe_dump(record, sort_keys=False), mode=0o600)
    log("SUCCESS", f"Credentials saved to {path} (mode 600)")


def load_credential_record(path: Path) -> Dict:
    if not path.exists():
        raise FactoryError(
            f"Credential record not found at {path}.\n"
            "  Possible fixes:\n"
            "    - Run 'factory-vm setup' first"
        )
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise FactoryError(f"Credential record {path} is malformed")
    return data


def ensure_ssh_keypair(path: Path, comment: str = "factory-foreman") -> Tuple[Path, str]:
    """Create an ed25519 key pair at ``path`` unless one already exists."""
    public = path.with_name(path.name + ".pub")
    if path.exists() and public.exists():
        log("INFO", f"Using existing SSH key: {path}")
    else:
        ensure_directory(path.parent, mode=0o700)
        if path.exists():
            path.unlink()
        try:
            run(
                ["ssh-keygen", "-t", "ed25519", "-N", "", "-C", comment, "-f", str(path)],
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise FactoryError("ssh-keygen not found. Install the OpenSSH client.") from exc
        except subprocess.CalledProcessError as exc:
            raise FactoryError(f"ssh-keygen failed: {exc.stderr.strip()}") from exc
        log("SUCCESS", f"Generated SSH key: {path}")
    path.chmod(0o600)
    return path, public.read_text().strip()
