"""Global constants and path configuration for factory-vm."""

from __future__ import annotations

import os
import re
from pathlib import Path

HOME = Path.home()

DEFAULT_VM_DIR = HOME / "vms" / "factory"
REMOTE_VM_DIR = "vms/factory"
DEFAULT_STATE_DIR = HOME / ".factory-vm"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"
CREDENTIALS_FILENAME = "credentials.yaml"
STATUS_FILENAME = "setup-status.txt"
TOKEN_CACHE_PATH = HOME / ".jenkins-factory-token"
SSH_KEY_PATH = HOME / ".ssh" / "factory-foreman"
SSH_CONFIG_PATH = HOME / ".ssh" / "config"
CLI_JAR_PATH = HOME / ".java" / "jars" / "jenkins-cli-factory.jar"

DEFAULT_HOSTNAME = "factory.local"
DEFAULT_SERVICE_USER = "foreman"
SSH_HOST_ALIAS = "factory"

SYSTEM_DISK_NAME = "factory.qcow2"
DATA_DISK_NAME = "factory-data.qcow2"
PID_FILE_NAME = "factory.pid"
UEFI_VARS_NAME = "factory-vars.fd"
CA_ROOT_NAME = "caddy-root.crt"
CA_INTERMEDIATE_NAME = "caddy-intermediate.crt"
CA_BUNDLE_NAME = "caddy-ca-bundle.pem"

DEFAULT_SSH_PORT = 2222
DEFAULT_HTTPS_PORT = 8443
DEFAULT_HTTP_PORT = 8080

DATA_DISK_MIN_GB = 50
DATA_DISK_MAX_GB = 2000

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

ALPINE_VERSION = "3.19"
ALPINE_RELEASE = "3.19.1"
ALPINE_MIRROR = "https://dl-cdn.alpinelinux.org/alpine"
KUBECTL_VERSION = "1.28.4"
HELM_VERSION = "3.13.3"
TERRAFORM_VERSION = "1.6.6"
JENKINS_IMAGE = "jenkins/jenkins:lts-jdk21"
JENKINS_AGENT_IMAGE = "jenkins/inbound-agent:latest-jdk21"
JENKINS_AGENT_LABELS = "docker linux arm64 aarch64"
JENKINS_UPDATE_CENTER = "https://updates.jenkins.io"
ANDROID_CMDLINE_TOOLS = "11076708"
ANDROID_API_LEVEL = 34
ANDROID_BUILD_TOOLS = "34.0.0"
ANDROID_HOME = "/opt/android-sdk"
GRADLE_VERSION = "8.5"

DEFAULT_PLUGINS = (
    "configuration-as-code",
    "git",
    "workflow-aggregator",
    "docker-workflow",
    "docker-plugin",
    "credentials-binding",
    "timestamper",
)

QEMU_BINARY = "qemu-system-aarch64"
QEMU_MACHINE = "virt"
QEMU_CPU = "cortex-a72"

UEFI_CODE_CANDIDATES = (
    Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
    Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
    Path("/usr/share/edk2/aarch64/QEMU_EFI.fd"),
    Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
    Path("/usr/local/share/qemu/edk2-aarch64-code.fd"),
    Path("/usr/share/qemu/edk2-aarch64-code.fd"),
)

UEFI_VARS_CANDIDATES = (
    Path("/usr/share/AAVMF/AAVMF_VARS.fd"),
    Path("/usr/share/edk2/aarch64/QEMU_VARS.fd"),
    Path("/opt/homebrew/share/qemu/edk2-arm-vars.fd"),
    Path("/usr/local/share/qemu/edk2-arm-vars.fd"),
    Path("/usr/share/qemu/edk2-arm-vars.fd"),
)

# Guest-side paths
GUEST_JENKINS_HOME = "/opt/jenkins"
GUEST_TOKEN_FILE = f"{GUEST_JENKINS_HOME}/foreman-api-token.txt"
GUEST_CLI_JAR = f"{GUEST_JENKINS_HOME}/war/WEB-INF/jenkins-cli.jar"
GUEST_CA_DIR = "/var/lib/caddy/.local/share/caddy/pki/authorities/local"
GUEST_CA_ROOT = f"{GUEST_CA_DIR}/root.crt"
GUEST_CA_INTERMEDIATE = f"{GUEST_CA_DIR}/intermediate.crt"
GUEST_STAGING_DIR = "/root/factory-staging"

JAVA_KEYSTORE_PASSWORD = "changeit"
JAVA_ROOT_ALIAS = "caddy-factory-ca"
JAVA_INTERMEDIATE_ALIAS = "caddy-intermediate-ca"
NSS_ROOT_NICKNAME = "Caddy Local CA - factory"
NSS_INTERMEDIATE_NICKNAME = "Caddy Intermediate CA - factory"

CHROMIUM_CONFIG_DIRS = (
    ".config/google-chrome",
    ".config/chromium",
    ".config/BraveSoftware/Brave-Browser",
    ".config/microsoft-edge",
    ".config/vivaldi",
    ".config/opera",
)
FIREFOX_PROFILE_ROOTS = (
    ".mozilla/firefox",
    "snap/firefox/common/.mozilla/firefox",
)
SHARED_NSS_DB = ".pki/nssdb"

TOKEN_TTL_SECONDS = 30 * 24 * 3600

SECRET_LENGTH = 20

HOSTNAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*$")
