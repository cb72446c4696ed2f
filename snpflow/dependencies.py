#!/usr/bin/env python3
import os
import shutil
import subprocess

from snpflow.host import run_command
from snpflow.log import print_info, print_step

DEPENDENCIES_MARKER = "dependencies_already_installed"
NASM_MARKER = "nasm_already_built"

NASM_VERSION = "2.16.01"
NASM_SOURCE_TAR_URL = f"https://www.nasm.us/pub/nasm/releasebuilds/{NASM_VERSION}/nasm-{NASM_VERSION}.tar.gz"

APT_PACKAGES = [
    # Build dependencies
    "build-essential", "git",
    # ACL for setting access to /dev/sev
    "acl",
    # qemu dependencies
    "ninja-build", "pkg-config", "libglib2.0-dev", "libpixman-1-dev", "libslirp-dev",
    # ovmf dependencies; nasm is built from source by install_nasm_from_source
    "python-is-python3", "uuid-dev", "iasl",
    # kernel dependencies
    "bc", "rsync", "flex", "bison", "libncurses-dev", "libssl-dev", "libelf-dev",
    "dwarves", "zstd", "debhelper",
    # cloud-localds
    "cloud-image-utils",
    # qemu-img
    "qemu-utils",
    # Needed to find information about the CPU
    "cpuid",
]


def install_dependencies(working_dir, runner=subprocess.run):
    """
    Install the host packages needed to build and run the SNP components.

    Guarded by a marker file in the working directory; returns False when the
    packages were installed by an earlier run.
    """
    marker = os.path.join(working_dir, DEPENDENCIES_MARKER)
    if os.path.isfile(marker):
        print_info("Dependencies previously installed")
        return False

    print_step("Installing apt dependencies")
    run_command(["sudo", "apt", "update"], runner=runner)
    run_command(["sudo", "apt", "install", "-y"] + APT_PACKAGES, runner=runner)
    install_nasm_from_source(working_dir, runner=runner)

    os.makedirs(working_dir, exist_ok=True)
    with open(marker, "w") as f:
        f.write("true\n")
    return True


def install_nasm_from_source(working_dir, runner=subprocess.run):
    """
    Build and install nasm from the release tarball, replacing the distro package.

    OVMF fails to build with the nasm shipped by older distributions.
    Guarded by its own marker; returns False when an earlier run installed it.
    """
    marker = os.path.join(working_dir, NASM_MARKER)
    if os.path.isfile(marker):
        print_info("nasm previously built from source")
        return False

    print_step(f"Building nasm {NASM_VERSION} from source")
    os.makedirs(working_dir, exist_ok=True)
    tarball = f"nasm-{NASM_VERSION}.tar.gz"
    run_command(["sudo", "apt", "purge", "-y", "nasm"], runner=runner)
    run_command(["wget", "-nv", NASM_SOURCE_TAR_URL, "-O", tarball], cwd=working_dir, runner=runner)
    run_command(["tar", "xzf", tarball], cwd=working_dir, runner=runner)
    source_dir = os.path.join(working_dir, f"nasm-{NASM_VERSION}")
    run_command(["./configure"], cwd=source_dir, runner=runner)
    run_command(["make"], cwd=source_dir, runner=runner)
    run_command(["sudo", "make", "install"], cwd=source_dir, runner=runner)

    with open(marker, "w") as f:
        f.write("true\n")
    return True


def cargo_env():
    """Environment with ~/.cargo/bin on PATH, as rustup's env script sets it."""
    env = dict(os.environ)
    cargo_bin = os.path.join(os.path.expanduser("~"), ".cargo", "bin")
    env["PATH"] = cargo_bin + os.pathsep + env.get("PATH", "")
    return env


def install_rust(runner=subprocess.run):
    """Install the Rust toolchain with rustup unless rustc is already available."""
    if shutil.which("rustc", path=cargo_env()["PATH"]):
        print_info("Rust previously installed")
        return False

    print_step("Installing Rust toolchain")
    run_command("curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y", runner=runner)
    return True
