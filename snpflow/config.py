# snpflow/config.py
import os
from dataclasses import dataclass

from snpflow.errors import UsageError

# Every recognized environment variable with its default.
# Values containing ${NAME} are expanded against the already resolved keys.
DEFAULTS = {
    # Working directories.
    "WORKING_DIR": "~/snp",
    "SETUP_WORKING_DIR": "${WORKING_DIR}/setup",
    "LAUNCH_WORKING_DIR": "${WORKING_DIR}/launch",
    "ATTESTATION_WORKING_DIR": "${WORKING_DIR}/attest",

    # Network.
    "HOST_SSH_PORT": "10022",

    # Guest definition.
    "GUEST_NAME": "snp-guest",
    "GUEST_SIZE_GB": "20",
    "GUEST_MEM_SIZE_MB": "2048",
    "GUEST_SMP": "4",
    "CPU_MODEL": "EPYC-v4",

    # Guest credentials.
    "GUEST_USER": "amd",
    "GUEST_PASS": "amd",
    "GUEST_SSH_KEY_PATH": "${LAUNCH_WORKING_DIR}/${GUEST_NAME}-key",
    "GUEST_ROOT_LABEL": "cloudimg-rootfs",

    # Launch files.
    "QEMU_CMDLINE": "${LAUNCH_WORKING_DIR}/qemu.cmdline",
    "IMAGE": "${LAUNCH_WORKING_DIR}/${GUEST_NAME}.img",
}

INTEGER_KEYS = ("HOST_SSH_PORT", "GUEST_SIZE_GB", "GUEST_MEM_SIZE_MB", "GUEST_SMP")

# Sources of the components built on the host.
AMDSEV_URL = "https://github.com/ryansavino/AMDSEV.git"
AMDSEV_DEFAULT_BRANCH = "snp-latest-fixes"
AMDSEV_NON_UPM_BRANCH = "snp-non-upm"
SNPGUEST_URL = "https://github.com/virtee/snpguest.git"
SNPGUEST_BRANCH = "tags/v0.7.1"
CLOUD_INIT_IMAGE_URL = "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img"


def resolve_settings(environ):
    """
    Resolve DEFAULTS against an environment mapping.

    Variables set in the environment win; unset ones fall back to the
    default, with ${NAME} references expanded in declaration order.
    """
    resolved = {}
    for key, default in DEFAULTS.items():
        value = environ.get(key)
        if value is None or value == "":
            value = default
            for name, known in resolved.items():
                value = value.replace("${" + name + "}", known)
        resolved[key] = os.path.expanduser(value)
    return resolved


@dataclass(frozen=True)
class Directories:
    working: str
    setup: str
    launch: str
    attest: str


@dataclass(frozen=True)
class Config:
    dir: Directories

    # Guest (VM) definition.
    guest_name: str
    guest_size_gb: int
    guest_mem_size_mb: int
    guest_smp: int
    cpu_model: str
    guest_root_label: str

    # Guest access.
    host_ssh_port: int
    guest_host: str
    guest_user: str
    guest_pass: str
    guest_ssh_key_path: str

    # Launch files.
    qemu_cmdline_file: str
    image: str

    # Variants selected on the command line.
    upm: bool = True
    skip_image_create: bool = False

    @classmethod
    def from_env(cls, environ=None, upm=True, image=None):
        """
        Build the configuration once at process start.

        :param environ: Mapping to read variables from (default: os.environ).
        :param upm: False selects the non-UPM (sev-snp-devel) host build.
        :param image: Path to a pre-existing guest image; skips image creation.
        """
        settings = resolve_settings(os.environ if environ is None else environ)

        numbers = {}
        for key in INTEGER_KEYS:
            try:
                numbers[key] = int(settings[key])
            except ValueError:
                raise UsageError(f"{key} must be an integer, got {settings[key]!r}")

        setup_dir = os.path.realpath(settings["SETUP_WORKING_DIR"])
        if not upm:
            setup_dir = os.path.join(setup_dir, "non-upm")

        dirs = Directories(
            working=os.path.realpath(settings["WORKING_DIR"]),
            setup=setup_dir,
            launch=os.path.realpath(settings["LAUNCH_WORKING_DIR"]),
            attest=os.path.realpath(settings["ATTESTATION_WORKING_DIR"]),
        )

        return cls(
            dir=dirs,
            guest_name=settings["GUEST_NAME"],
            guest_size_gb=numbers["GUEST_SIZE_GB"],
            guest_mem_size_mb=numbers["GUEST_MEM_SIZE_MB"],
            guest_smp=numbers["GUEST_SMP"],
            cpu_model=settings["CPU_MODEL"],
            guest_root_label=settings["GUEST_ROOT_LABEL"],
            host_ssh_port=numbers["HOST_SSH_PORT"],
            guest_host="localhost",
            guest_user=settings["GUEST_USER"],
            guest_pass=settings["GUEST_PASS"],
            guest_ssh_key_path=os.path.realpath(settings["GUEST_SSH_KEY_PATH"]),
            qemu_cmdline_file=os.path.realpath(settings["QEMU_CMDLINE"]),
            image=os.path.realpath(image or settings["IMAGE"]),
            upm=upm,
            skip_image_create=image is not None,
        )

    @property
    def kernel_append(self):
        return f"root=LABEL={self.guest_root_label} ro console=ttyS0"

    @property
    def amdsev_branch(self):
        return AMDSEV_DEFAULT_BRANCH if self.upm else AMDSEV_NON_UPM_BRANCH

    @property
    def amdsev_dir(self):
        return os.path.join(self.dir.setup, "AMDSEV")

    @property
    def seed_image(self):
        return os.path.join(self.dir.launch, f"{self.guest_name}-seed.img")

    @property
    def pid_file(self):
        return os.path.join(self.dir.launch, "qemu.pid")
