"""Configuration loading and environment variable parsing for factory-vm."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from factoryvm.constants import (
    ALPINE_RELEASE,
    ALPINE_VERSION,
    CLI_JAR_PATH,
    DEFAULT_CONFIG_PATH,
    DEFAULT_HOSTNAME,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_PLUGINS,
    DEFAULT_SERVICE_USER,
    DEFAULT_SSH_PORT,
    DEFAULT_STATE_DIR,
    DEFAULT_VM_DIR,
    HELM_VERSION,
    HOSTNAME_RE,
    KUBECTL_VERSION,
    SSH_CONFIG_PATH,
    SSH_KEY_PATH,
    TERRAFORM_VERSION,
    TOKEN_CACHE_PATH,
    TRUTHY,
)
from factoryvm.exceptions import ConfigError
from factoryvm.models import FactoryConfig
from factoryvm.profiler import CANDIDATE_PROFILES
from factoryvm.steps import KNOWN_EXTRAS
from factoryvm.utils import get_env, log, parse_int_value


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML settings file. A missing file yields an empty mapping."""
    if config_path is None:
        override = get_env("FACTORY_CONFIG")
        config_path = Path(override).expanduser() if override else DEFAULT_CONFIG_PATH
        if not config_path.exists():
            return {}
    elif not config_path.exists():
        raise ConfigError(f"Config file missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    log("DEBUG", f"Loaded settings from {config_path}")
    return data


def _setting(env_name: str, data: Dict[str, Any], key: str, default: Any) -> Any:
    raw = get_env(env_name)
    if raw is not None and raw.strip() != "":
        return raw.strip()
    if key in data and data[key] is not None:
        return data[key]
    return default


def _int_setting(env_name: str, data: Dict[str, Any], key: str, default: int, min_val: int = 1,
                 max_val: Optional[int] = None) -> int:
    return parse_int_value(env_name, _setting(env_name, data, key, default), min_val=min_val, max_val=max_val)


def _bool_setting(env_name: str, data: Dict[str, Any], key: str, default: bool) -> bool:
    value = _setting(env_name, data, key, default)
    if isinstance(value, bool):
        return value
    return str(value).lower() in TRUTHY


def _list_setting(env_name: str, data: Dict[str, Any], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = _setting(env_name, data, key, default)
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        raise ConfigError(f"{env_name} must be a list or comma-separated string")
    return tuple(item for item in items if item)


def _path_setting(env_name: str, data: Dict[str, Any], key: str, default: Path) -> Path:
    return Path(str(_setting(env_name, data, key, default))).expanduser()


def parse_env(config_path: Optional[Path] = None) -> FactoryConfig:
    data = load_config_file(config_path)
    versions = data.get("versions") or {}
    if not isinstance(versions, dict):
        raise ConfigError("'versions' must be a mapping")

    state_dir = _path_setting("FACTORY_STATE_DIR", data, "state_dir", DEFAULT_STATE_DIR)
    vm_dir = _path_setting("FACTORY_VM_DIR", data, "vm_dir", DEFAULT_VM_DIR)
    cache_dir = _path_setting("FACTORY_CACHE_DIR", data, "cache_dir", state_dir / "cache")

    hostname = str(_setting("FACTORY_HOSTNAME", data, "hostname", DEFAULT_HOSTNAME)).lower()
    if not HOSTNAME_RE.match(hostname):
        raise ConfigError(f"Invalid FACTORY_HOSTNAME '{hostname}'")
    service_user = str(_setting("FACTORY_USER", data, "service_user", DEFAULT_SERVICE_USER))
    if not service_user.isidentifier() or service_user == "root":
        raise ConfigError(f"Invalid FACTORY_USER '{service_user}' (must be a plain login name, not root)")

    ssh_port = _int_setting("SSH_PORT", data, "ssh_port", DEFAULT_SSH_PORT, max_val=65535)
    https_port = _int_setting("HTTPS_PORT", data, "https_port", DEFAULT_HTTPS_PORT, max_val=65535)
    http_port = _int_setting("HTTP_PORT", data, "http_port", DEFAULT_HTTP_PORT, max_val=65535)
    if len({ssh_port, https_port, http_port}) != 3:
        raise ConfigError(
            f"SSH_PORT, HTTPS_PORT and HTTP_PORT must differ (got {ssh_port}, {https_port}, {http_port})"
        )

    profile_name = _setting("FACTORY_PROFILE", data, "profile", None)
    if profile_name is not None:
        profile_name = str(profile_name).lower()
        known = [profile.name for profile in CANDIDATE_PROFILES]
        if profile_name not in known:
            raise ConfigError(f"Unknown FACTORY_PROFILE '{profile_name}'. Choose one of: {', '.join(known)}")

    extras = _list_setting("FACTORY_EXTRAS", data, "extras", ())
    unknown = sorted(set(extras) - set(KNOWN_EXTRAS))
    if unknown:
        raise ConfigError(f"Unknown FACTORY_EXTRAS entries: {', '.join(unknown)}")

    return FactoryConfig(
        vm_dir=vm_dir,
        state_dir=state_dir,
        cache_dir=cache_dir,
        hostname=hostname,
        service_user=service_user,
        ssh_port=ssh_port,
        https_port=https_port,
        http_port=http_port,
        ssh_key_path=_path_setting("FACTORY_SSH_KEY", data, "ssh_key", SSH_KEY_PATH),
        ssh_config_path=_path_setting("FACTORY_SSH_CONFIG", data, "ssh_config", SSH_CONFIG_PATH),
        token_cache_path=_path_setting("FACTORY_TOKEN_CACHE", data, "token_cache", TOKEN_CACHE_PATH),
        cli_jar_path=_path_setting("FACTORY_CLI_JAR", data, "cli_jar", CLI_JAR_PATH),
        alpine_version=str(versions.get("alpine", ALPINE_VERSION)),
        alpine_release=str(versions.get("alpine_release", ALPINE_RELEASE)),
        kubectl_version=str(versions.get("kubectl", KUBECTL_VERSION)),
        helm_version=str(versions.get("helm", HELM_VERSION)),
        terraform_version=str(versions.get("terraform", TERRAFORM_VERSION)),
        plugins=_list_setting("JENKINS_PLUGINS", data, "plugins", DEFAULT_PLUGINS),
        plugin_version=str(_setting("JENKINS_PLUGIN_VERSION", data, "plugin_version", "latest")),
        profile_name=profile_name,
        extras=extras,
        download_workers=_int_setting("DOWNLOAD_WORKERS", data, "download_workers", 3, max_val=16),
        download_retries=_int_setting("DOWNLOAD_RETRIES", data, "download_retries", 3, max_val=10),
        ssh_ready_timeout=_int_setting("SSH_READY_TIMEOUT", data, "ssh_ready_timeout", 300),
        ci_ready_timeout=_int_setting("CI_READY_TIMEOUT", data, "ci_ready_timeout", 600),
        install_prompt_timeout=_int_setting("INSTALL_PROMPT_TIMEOUT", data, "install_prompt_timeout", 300),
        shutdown_grace=_int_setting("SHUTDOWN_GRACE", data, "shutdown_grace", 30, min_val=0),
        use_sudo=_bool_setting("USE_SUDO", data, "use_sudo", True),
    )
