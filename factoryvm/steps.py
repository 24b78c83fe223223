"""The declared, ordered list of remote configuration steps."""

from __future__ import annotations

import subprocess
import textwrap
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from factoryvm.cache import HELM_ARTIFACT, KUBECTL_ARTIFACT, PLUGIN_PREFIX, TERRAFORM_ARTIFACT
from factoryvm.constants import (
    ALPINE_MIRROR,
    ANDROID_API_LEVEL,
    ANDROID_BUILD_TOOLS,
    ANDROID_CMDLINE_TOOLS,
    ANDROID_HOME,
    GRADLE_VERSION,
    GUEST_CA_ROOT,
    GUEST_JENKINS_HOME,
    GUEST_STAGING_DIR,
    GUEST_TOKEN_FILE,
    JENKINS_AGENT_IMAGE,
    JENKINS_AGENT_LABELS,
    JENKINS_IMAGE,
)
from factoryvm.credentials import ci_password_hash
from factoryvm.exceptions import ReadinessTimeout, StepFailure
from factoryvm.models import CachedArtifact, FactoryConfig, Profile, Secrets
from factoryvm.remote import RemoteShell
from factoryvm.utils import format_elapsed, log, poll_until


@dataclass
class StepContext:
    config: FactoryConfig
    remote: RemoteShell
    secrets: Secrets
    public_key: str
    profile: Profile
    artifacts: Dict[str, CachedArtifact] = field(default_factory=dict)
    cancel: Optional[threading.Event] = None
    poll_interval: float = 5.0


StepAction = Callable[[StepContext], Optional[str]]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    action: StepAction
    optional: bool = False
    requires: Tuple[str, ...] = ()
    description: str = ""


def _script(ctx: StepContext, name: str, body: str, env: Optional[Dict[str, str]] = None,
            timeout: float = 1800) -> subprocess.CompletedProcess:
    return ctx.remote.run_script(
        textwrap.dedent(body),
        env=env,
        timeout=timeout,
        log_name=name,
        description=f"step '{name}'",
    )


# -- service-account ---------------------------------------------------------

SERVICE_ACCOUNT_SCRIPT = """\
apk add --no-cache bash doas
id "$FACTORY_USER" >/dev/null 2>&1 || adduser -D -s /bin/bash "$FACTORY_USER"
printf '%s:%s\\n' "$FACTORY_USER" "$FACTORY_USER_PASSWORD" | chpasswd
addgroup "$FACTORY_USER" wheel >/dev/null 2>&1 || true
getent group docker >/dev/null 2>&1 || addgroup -S docker
addgroup "$FACTORY_USER" docker >/dev/null 2>&1 || true
mkdir -p /etc/doas.d
echo 'permit nopass :wheel' > /etc/doas.d/wheel.conf
chmod 600 /etc/doas.d/wheel.conf
[ -e /usr/bin/sudo ] || ln -s "$(command -v doas)" /usr/bin/sudo
mkdir -p "/home/$FACTORY_USER/.ssh"
printf '%s\\n' "$FACTORY_PUBKEY" > "/home/$FACTORY_USER/.ssh/authorized_keys"
chmod 700 "/home/$FACTORY_USER/.ssh"
chmod 600 "/home/$FACTORY_USER/.ssh/authorized_keys"
chown -R "$FACTORY_USER:$FACTORY_USER" "/home/$FACTORY_USER"
"""


def create_service_account(ctx: StepContext) -> str:
    user = ctx.config.service_user
    _script(
        ctx,
        "service-account",
        SERVICE_ACCOUNT_SCRIPT,
        env={
            "FACTORY_USER": user,
            "FACTORY_USER_PASSWORD": ctx.secrets.service_password,
            "FACTORY_PUBKEY": ctx.public_key,
        },
        timeout=600,
    )
    return f"account '{user}' with wheel/docker groups and key login"


# -- harden-remote-access ----------------------------------------------------

SSHD_SETTINGS = (
    "PasswordAuthentication no",
    "KbdInteractiveAuthentication no",
    "PermitRootLogin prohibit-password",
    "PubkeyAuthentication yes",
)

HARDEN_SSH_SCRIPT = "for setting in " + " ".join(f'"{setting}"' for setting in SSHD_SETTINGS) + """; do
    key=${setting%% *}
    sed -i "/^#*[[:space:]]*$key[[:space:]]/d" /etc/ssh/sshd_config
    echo "$setting" >> /etc/ssh/sshd_config
done
sshd -t
rc-service sshd restart
"""


def harden_remote_access(ctx: StepContext) -> str:
    _script(ctx, "harden-remote-access", HARDEN_SSH_SCRIPT, timeout=120)
    user_shell = ctx.remote.as_user(ctx.config.service_user)

    def _key_login_works() -> bool:
        try:
            result = user_shell.run("id -un", timeout=30, log_name="harden-remote-access")
        except (subprocess.TimeoutExpired, OSError):
            return False
        return result.returncode == 0 and result.stdout.strip() == ctx.config.service_user

    if not poll_until(_key_login_works, timeout=60, interval=ctx.poll_interval,
                      description="Verifying key login", cancel=ctx.cancel):
        raise StepFailure(
            f"Key login as '{ctx.config.service_user}' failed after hardening sshd",
            remediation=f"ssh -p {ctx.config.ssh_port} -i {ctx.config.ssh_key_path} root@localhost 'tail /var/log/messages'",
        )
    return "password login disabled; key login verified"


# -- base-packages -----------------------------------------------------------

BASE_PACKAGES = (
    "bash", "bash-completion", "curl", "wget", "git", "openssh", "ca-certificates", "tzdata",
    "nano", "vim", "rsync", "jq", "unzip", "python3", "py3-pip", "nodejs", "openjdk17-jre",
    "build-base", "cmake", "linux-headers", "file", "findutils", "util-linux", "e2fsprogs",
)

BASE_PACKAGES_SCRIPT = """\
sed -i '/^#.*\\/community$/s/^#//' /etc/apk/repositories
grep -q '/community$' /etc/apk/repositories || echo "$ALPINE_REPO/community" >> /etc/apk/repositories
apk update
apk upgrade
apk add $PACKAGES
if ! blkid /dev/vdb >/dev/null 2>&1; then
    mkfs.ext4 -q -L factory-data /dev/vdb
fi
mkdir -p /data
grep -q 'LABEL=factory-data' /etc/fstab || echo 'LABEL=factory-data /data ext4 defaults 0 2' >> /etc/fstab
mountpoint -q /data || mount /data
"""


def install_base_packages(ctx: StepContext) -> str:
    _script(
        ctx,
        "base-packages",
        BASE_PACKAGES_SCRIPT,
        env={
            "ALPINE_REPO": f"{ALPINE_MIRROR}/v{ctx.config.alpine_version}",
            "PACKAGES": " ".join(BASE_PACKAGES),
        },
    )
    return f"{len(BASE_PACKAGES)} packages; data disk mounted at /data"


# -- docker ------------------------------------------------------------------

DOCKER_SCRIPT = """\
apk add docker docker-cli-compose
mkdir -p /etc/docker /data/docker
[ -f /etc/docker/daemon.json ] || printf '{\\n  "data-root": "/data/docker"\\n}\\n' > /etc/docker/daemon.json
rc-update add docker boot
rc-service docker start
tries=0
until docker info >/dev/null 2>&1; do
    tries=$((tries + 1))
    [ "$tries" -ge 30 ] && { echo "docker daemon did not come up" >&2; exit 1; }
    sleep 2
done
docker --version
"""


def install_docker(ctx: StepContext) -> str:
    result = _script(ctx, "docker", DOCKER_SCRIPT)
    lines = result.stdout.strip().splitlines()
    return lines[-1] if lines else "docker installed"


# -- reverse-proxy -----------------------------------------------------------

CADDY_SCRIPT = """\
apk add caddy nss-tools
mkdir -p /etc/caddy /var/lib/caddy
cat > /etc/caddy/Caddyfile <<EOF
{
	local_certs
}

https://$FACTORY_HOSTNAME, https://localhost {
	tls internal
	reverse_proxy localhost:8080
}
EOF
chown -R caddy:caddy /etc/caddy /var/lib/caddy
rc-update add caddy default
rc-service caddy restart
"""


def install_reverse_proxy(ctx: StepContext) -> str:
    _script(ctx, "reverse-proxy", CADDY_SCRIPT, env={"FACTORY_HOSTNAME": ctx.config.hostname}, timeout=600)

    def _ca_ready() -> bool:
        # A first TLS handshake makes Caddy issue its local CA if it has not yet.
        result = ctx.remote.run(
            f"wget -q --no-check-certificate -O /dev/null https://localhost/ ; test -s {GUEST_CA_ROOT}",
            timeout=30,
        )
        return result.returncode == 0

    if not poll_until(_ca_ready, timeout=120, interval=ctx.poll_interval,
                      description="Waiting for the Caddy local CA", cancel=ctx.cancel):
        raise ReadinessTimeout(f"Caddy did not create {GUEST_CA_ROOT} within 120s")
    return f"https://{ctx.config.hostname} -> localhost:8080 (tls internal)"


# -- build-tools -------------------------------------------------------------

BUILD_TOOLS_SCRIPT = """\
cd "$STAGE"
install -m 755 kubectl /usr/local/bin/kubectl
tar -xzf helm.tar.gz
install -m 755 linux-arm64/helm /usr/local/bin/helm
unzip -o -q terraform.zip -d terraform-dist
install -m 755 terraform-dist/terraform /usr/local/bin/terraform
apk add aws-cli
kubectl version --client
helm version --short
terraform version
aws --version
cd /
rm -rf "$STAGE"
"""


def install_build_tools(ctx: StepContext) -> str:
    uploads = {KUBECTL_ARTIFACT: "kubectl", HELM_ARTIFACT: "helm.tar.gz", TERRAFORM_ARTIFACT: "terraform.zip"}
    missing = [name for name in uploads if name not in ctx.artifacts]
    if missing:
        raise StepFailure(
            f"Artifacts not available in the download cache: {', '.join(missing)}",
            remediation="factory-vm cache --fetch && factory-vm bootstrap --step build-tools",
        )
    ctx.remote.run(f"mkdir -p {GUEST_STAGING_DIR}", timeout=30)
    for name, target in uploads.items():
        ctx.remote.copy_to(ctx.artifacts[name].path, f"{GUEST_STAGING_DIR}/{target}")
    _script(ctx, "build-tools", BUILD_TOOLS_SCRIPT, env={"STAGE": GUEST_STAGING_DIR})
    return (
        f"kubectl {ctx.config.kubectl_version}, helm {ctx.config.helm_version}, "
        f"terraform {ctx.config.terraform_version}, aws-cli"
    )


# -- ci-server ---------------------------------------------------------------

GROOVY_SECURITY = """\
#!groovy
import hudson.security.FullControlOnceLoggedInAuthorizationStrategy
import jenkins.install.InstallState
import jenkins.model.Jenkins

def instance = Jenkins.get()
if (!instance.installState.isSetupComplete()) {
    InstallState.INITIAL_SETUP_COMPLETED.initializeState()
}
def strategy = new FullControlOnceLoggedInAuthorizationStrategy()
strategy.setAllowAnonymousRead(false)
instance.setAuthorizationStrategy(strategy)
instance.setNumExecutors(0)
instance.setMode(hudson.model.Node.Mode.EXCLUSIVE)
instance.save()
println '--> factory: security and built-in node configured'
"""

# The account is created from a bcrypt hash; the plaintext never enters the guest.
# The token file is written only after user.save() so its presence implies the
# token is persisted in the user's config.xml.
GROOVY_ADMIN_USER = """\
#!groovy
import hudson.model.User
import hudson.security.HudsonPrivateSecurityRealm
import jenkins.model.Jenkins
import jenkins.security.ApiTokenProperty

def instance = Jenkins.get()
def userId = System.getenv('FACTORY_CI_USER') ?: 'foreman'
def passwordHash = System.getenv('FACTORY_CI_PASSWORD_HASH')
def tokenFile = new File(instance.rootDir, 'foreman-api-token.txt')

if (!passwordHash) {
    throw new IllegalStateException('FACTORY_CI_PASSWORD_HASH is not set')
}

def realm = instance.getSecurityRealm()
if (!(realm instanceof HudsonPrivateSecurityRealm)) {
    realm = new HudsonPrivateSecurityRealm(false)
    instance.setSecurityRealm(realm)
}

def user = User.getById(userId, false)
if (user == null) {
    user = realm.createAccountWithHashedPassword(userId, passwordHash)
    println "--> factory: created ${userId}"
}

if (!tokenFile.exists() || tokenFile.length() == 0) {
    def property = user.getProperty(ApiTokenProperty.class)
    if (property == null) {
        property = new ApiTokenProperty()
        user.addProperty(property)
    }
    def token = property.tokenStore.generateNewToken('factory-cli')
    user.save()
    instance.save()
    def staged = new File(instance.rootDir, 'foreman-api-token.txt.tmp')
    staged.text = token.plainValue
    staged.setReadable(false, false)
    staged.setReadable(true, true)
    staged.renameTo(tokenFile)
    println "--> factory: API token for ${userId} persisted"
} else {
    instance.save()
}
"""


def jenkins_casc(config: FactoryConfig, agent_capacity: int = 2) -> str:
    """Render the JCasC document.

    The built-in node takes no builds; jobs run on containers started by the
    ``docker`` cloud against the guest's Docker socket.
    """
    document = {
        "jenkins": {
            "systemMessage": "Factory VM Jenkins - ARM64 build server. Builds run on agents, not the built-in node.",
            "numExecutors": 0,
            "mode": "EXCLUSIVE",
            "securityRealm": {"local": {"allowsSignup": False}},
            "authorizationStrategy": {"loggedInUsersCanDoAnything": {"allowAnonymousRead": False}},
            "clouds": [
                {
                    "docker": {
                        "name": "docker",
                        "dockerApi": {"dockerHost": {"uri": "unix:///var/run/docker.sock"}},
                        "containerCap": max(1, agent_capacity),
                        "templates": [
                            {
                                "name": "arm64-agent",
                                "labelString": JENKINS_AGENT_LABELS,
                                "mode": "NORMAL",
                                "dockerTemplateBase": {"image": JENKINS_AGENT_IMAGE},
                                "remoteFs": "/home/jenkins/agent",
                                "connector": {"attach": {"user": "jenkins"}},
                                "instanceCapStr": str(max(1, agent_capacity)),
                            },
                        ],
                    },
                },
            ],
        },
        "unclassified": {
            "location": {
                "url": config.public_url,
                "adminAddress": f"jenkins-admin@{config.hostname}",
            },
        },
    }
    return yaml.safe_dump(document, sort_keys=False)


def jenkins_init_script(profile: Profile) -> str:
    heap_mb = max(512, profile.memory_gb * 1024 // 4)
    return textwrap.dedent(f"""\
        #!/sbin/openrc-run

        name="Jenkins CI"
        description="Jenkins LTS in Docker"

        depend() {{
            need docker
            after caddy
        }}

        start() {{
            ebegin "Starting Jenkins"
            if [ -f {GUEST_JENKINS_HOME}/plugins.txt ] && [ ! -f {GUEST_JENKINS_HOME}/.plugins-installed ]; then
                docker run --rm -v {GUEST_JENKINS_HOME}:/var/jenkins_home {JENKINS_IMAGE} \\
                    jenkins-plugin-cli --plugin-file /var/jenkins_home/plugins.txt \\
                    --plugin-download-directory /var/jenkins_home/plugins \\
                    && touch {GUEST_JENKINS_HOME}/.plugins-installed
            fi
            docker rm -f jenkins >/dev/null 2>&1
            docker run -d --name jenkins --restart unless-stopped \\
                -p 8080:8080 -p 50000:50000 \\
                -v {GUEST_JENKINS_HOME}:/var/jenkins_home \\
                -v /var/run/docker.sock:/var/run/docker.sock \\
                --group-add "$(stat -c %g /var/run/docker.sock)" \\
                --env-file {GUEST_JENKINS_HOME}/.env \\
                -e JAVA_OPTS="-Djenkins.install.runSetupWizard=false -Xmx{heap_mb}m" \\
                -e CASC_JENKINS_CONFIG=/var/jenkins_home/jenkins.yaml \\
                {JENKINS_IMAGE} >/dev/null
            eend $?
        }}

        stop() {{
            ebegin "Stopping Jenkins"
            docker stop jenkins >/dev/null 2>&1
            docker rm jenkins >/dev/null 2>&1
            eend 0
        }}
        """)


CI_CONFIG_SCRIPT = """\
mkdir -p "$JENKINS_DIR/init.groovy.d" "$JENKINS_DIR/plugins"
if [ -d "$STAGE/plugins" ]; then
    for plugin in "$STAGE"/plugins/*.hpi; do
        [ -e "$plugin" ] || continue
        name=$(basename "$plugin" .hpi)
        cp "$plugin" "$JENKINS_DIR/plugins/$name.jpi"
    done
fi
printf '%s' "$GROOVY_SECURITY" > "$JENKINS_DIR/init.groovy.d/01-security.groovy"
printf '%s' "$GROOVY_ADMIN_USER" > "$JENKINS_DIR/init.groovy.d/05-admin-user.groovy"
printf '%s' "$CASC_YAML" > "$JENKINS_DIR/jenkins.yaml"
printf '%s' "$PLUGINS_TXT" > "$JENKINS_DIR/plugins.txt"
umask 077
printf 'FACTORY_CI_USER=%s\\nFACTORY_CI_PASSWORD_HASH=%s\\n' "$FACTORY_USER" "$CI_PASSWORD_HASH" > "$JENKINS_DIR/.env"
umask 022
printf '%s' "$INIT_SCRIPT" > /etc/init.d/jenkins
chmod 755 /etc/init.d/jenkins
chown -R 1000:1000 "$JENKINS_DIR"
docker pull "$AGENT_IMAGE"
rm -rf "$STAGE"
rc-update add jenkins default
rc-service jenkins restart
"""

CI_GATE_SCRIPT = f"""\
dir=$(ls -d {GUEST_JENKINS_HOME}/users/"$FACTORY_USER"_* 2>/dev/null | head -n 1)
[ -n "$dir" ] || {{ echo "pending: user directory not created"; exit 0; }}
grep -q 'ApiTokenStore_-HashedToken' "$dir/config.xml" || {{ echo "pending: token not persisted"; exit 0; }}
[ -s {GUEST_TOKEN_FILE} ] || {{ echo "pending: token file missing"; exit 0; }}
answer=$(printf 'user = "%s:%s"\\n' "$FACTORY_USER" "$(cat {GUEST_TOKEN_FILE})" \\
    | curl -fsS -K - http://localhost:8080/whoAmI/api/json 2>/dev/null || true)
case "$answer" in
    *'"authenticated":true'*) echo confirmed ;;
    *) echo "pending: API does not accept the token yet" ;;
esac
"""


def _plugin_artifacts(ctx: StepContext) -> List[CachedArtifact]:
    return [artifact for name, artifact in sorted(ctx.artifacts.items()) if name.startswith(PLUGIN_PREFIX)]


def wait_for_ci_credentials(ctx: StepContext, timeout: Optional[float] = None) -> None:
    """Block until the admin account and its API token are persisted and accepted."""
    timeout = ctx.config.ci_ready_timeout if timeout is None else timeout
    last = {"status": "not checked"}

    def _confirmed() -> bool:
        try:
            result = ctx.remote.run_script(
                CI_GATE_SCRIPT,
                env={"FACTORY_USER": ctx.config.service_user},
                timeout=60,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            last["status"] = f"ssh error: {exc}"
            return False
        last["status"] = (result.stdout or "").strip() or f"exit {result.returncode}"
        return last["status"] == "confirmed"

    if not poll_until(_confirmed, timeout=timeout, interval=ctx.poll_interval,
                      description="Waiting for Jenkins to persist the admin account", cancel=ctx.cancel):
        raise ReadinessTimeout(
            f"Jenkins admin credentials not confirmed within {format_elapsed(timeout)} ({last['status']})"
        )


def install_ci_server(ctx: StepContext) -> str:
    config = ctx.config
    stage = f"{GUEST_STAGING_DIR}/ci"
    ctx.remote.run(f"mkdir -p {stage}/plugins", timeout=30)
    plugins = _plugin_artifacts(ctx)
    for artifact in plugins:
        plugin = artifact.name[len(PLUGIN_PREFIX):]
        ctx.remote.copy_to(artifact.path, f"{stage}/plugins/{plugin}.hpi")
    if len(plugins) < len(config.plugins):
        log("WARN", f"{len(config.plugins) - len(plugins)} plugins not cached; Jenkins will download them itself")
    plugins_txt = "".join(f"{plugin}:{config.plugin_version}\n" for plugin in config.plugins)
    _script(
        ctx,
        "ci-server",
        CI_CONFIG_SCRIPT,
        env={
            "JENKINS_DIR": GUEST_JENKINS_HOME,
            "STAGE": stage,
            "FACTORY_USER": config.service_user,
            "CI_PASSWORD_HASH": ci_password_hash(ctx.secrets.ci_admin_password),
            "GROOVY_SECURITY": GROOVY_SECURITY,
            "GROOVY_ADMIN_USER": GROOVY_ADMIN_USER,
            "CASC_YAML": jenkins_casc(config, agent_capacity=max(1, ctx.profile.cpus // 2)),
            "AGENT_IMAGE": JENKINS_AGENT_IMAGE,
            "PLUGINS_TXT": plugins_txt,
            "INIT_SCRIPT": jenkins_init_script(ctx.profile),
        },
    )
    log("INFO", "Jenkins container started; waiting for the admin account and API token to persist...")
    wait_for_ci_credentials(ctx)
    return f"Jenkins up; '{config.service_user}' and API token persisted; builds run on the docker cloud"


# -- extras ------------------------------------------------------------------

ANSIBLE_SCRIPT = """\
apk add py3-pip python3-dev build-base libffi-dev openssl-dev
pip3 install --break-system-packages ansible boto3 botocore
ansible --version
"""


def install_ansible(ctx: StepContext) -> str:
    _script(ctx, "ansible", ANSIBLE_SCRIPT)
    return "ansible with boto3"


ANDROID_SDK_SCRIPT = """\
apk add gcompat libstdc++ unzip wget
mkdir -p "$ANDROID_HOME/cmdline-tools"
if [ ! -x "$ANDROID_HOME/cmdline-tools/latest/bin/sdkmanager" ]; then
    wget -q "https://dl.google.com/android/repository/commandlinetools-linux-${SDK_TOOLS_VERSION}_latest.zip" -O /tmp/android-sdk.zip
    rm -rf "$ANDROID_HOME/cmdline-tools/latest" "$ANDROID_HOME/cmdline-tools/cmdline-tools"
    unzip -q /tmp/android-sdk.zip -d "$ANDROID_HOME/cmdline-tools"
    mv "$ANDROID_HOME/cmdline-tools/cmdline-tools" "$ANDROID_HOME/cmdline-tools/latest"
    rm -f /tmp/android-sdk.zip
fi
cat > /etc/profile.d/android-sdk.sh <<PROFILE
export ANDROID_HOME=$ANDROID_HOME
export PATH=\\$PATH:$ANDROID_HOME/cmdline-tools/latest/bin:$ANDROID_HOME/platform-tools:$ANDROID_HOME/build-tools/$BUILD_TOOLS_VERSION
PROFILE
yes | "$ANDROID_HOME/cmdline-tools/latest/bin/sdkmanager" --licenses >/dev/null
"$ANDROID_HOME/cmdline-tools/latest/bin/sdkmanager" $SDK_PACKAGES
if [ ! -x "/opt/gradle-$GRADLE_VERSION/bin/gradle" ]; then
    wget -q "https://services.gradle.org/distributions/gradle-$GRADLE_VERSION-bin.zip" -O /tmp/gradle.zip
    unzip -q -o /tmp/gradle.zip -d /opt
    rm -f /tmp/gradle.zip
fi
ln -sf "/opt/gradle-$GRADLE_VERSION/bin/gradle" /usr/local/bin/gradle
chown -R "$FACTORY_USER:$FACTORY_USER" "$ANDROID_HOME"
gradle --version | grep '^Gradle'
"""


def install_android_sdk(ctx: StepContext) -> str:
    packages = ("platform-tools", f"platforms;android-{ANDROID_API_LEVEL}", f"build-tools;{ANDROID_BUILD_TOOLS}")
    _script(
        ctx,
        "android-sdk",
        ANDROID_SDK_SCRIPT,
        env={
            "ANDROID_HOME": ANDROID_HOME,
            "SDK_TOOLS_VERSION": ANDROID_CMDLINE_TOOLS,
            "SDK_PACKAGES": " ".join(packages),
            "BUILD_TOOLS_VERSION": ANDROID_BUILD_TOOLS,
            "GRADLE_VERSION": GRADLE_VERSION,
            "FACTORY_USER": ctx.config.service_user,
        },
        timeout=3600,
    )
    return f"Android SDK (API {ANDROID_API_LEVEL}, build-tools {ANDROID_BUILD_TOOLS}) at {ANDROID_HOME}; Gradle {GRADLE_VERSION}"


EXTRA_STEPS = {
    "ansible": StepDefinition("ansible", install_ansible, optional=True,
                              description="Ansible and AWS SDK"),
    "android-sdk": StepDefinition("android-sdk", install_android_sdk, optional=True,
                                  description="Android SDK and Gradle"),
}
KNOWN_EXTRAS = tuple(EXTRA_STEPS)


def default_steps(extras: Tuple[str, ...] = ()) -> List[StepDefinition]:
    """The fixed bootstrap order, followed by any requested extras."""
    steps = [
        StepDefinition("service-account", create_service_account,
                       description="Service account with key login"),
        StepDefinition("harden-remote-access", harden_remote_access, requires=("service-account",),
                       description="Key-only SSH"),
        StepDefinition("base-packages", install_base_packages, description="Base packages and data disk"),
        StepDefinition("docker", install_docker, description="Docker engine"),
        StepDefinition("reverse-proxy", install_reverse_proxy, optional=True,
                       description="Caddy HTTPS reverse proxy"),
        StepDefinition("build-tools", install_build_tools, optional=True,
                       description="kubectl, Helm, Terraform, AWS CLI"),
        StepDefinition("ci-server", install_ci_server, requires=("docker",), description="Jenkins CI server"),
    ]
    steps.extend(EXTRA_STEPS[name] for name in extras)
    return steps
