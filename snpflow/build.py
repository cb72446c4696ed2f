#!/usr/bin/env python3
"""
Host-side builds: the AMDSEV stack (QEMU, OVMF, host and guest kernels)
and the snpguest attestation tool copied into the guest.
"""

import glob
import os
import shutil
import subprocess

from snpflow.config import AMDSEV_URL, SNPGUEST_BRANCH, SNPGUEST_URL
from snpflow.dependencies import cargo_env
from snpflow.errors import ArtifactError
from snpflow.host import latest_dir, parse_kernel_version, run_command
from snpflow.log import print_info


def checkout(repo_dir, url, ref, runner=subprocess.run):
    """Clone url into repo_dir if needed, then fetch and check out ref."""
    is_tag = ref.startswith("tags/")
    if not os.path.isdir(repo_dir):
        branch = ref[len("tags/"):] if is_tag else ref
        run_command(["git", "clone", "-b", branch, url, repo_dir], runner=runner)
        run_command(["git", "-C", repo_dir, "remote", "add", "current", url], runner=runner)

    run_command(["git", "-C", repo_dir, "remote", "set-url", "current", url], runner=runner)
    run_command(["git", "-C", repo_dir, "fetch", "current", ref], runner=runner)
    run_command(["git", "-C", repo_dir, "checkout", ref if is_tag else f"current/{ref}"], runner=runner)


def guest_kernel_version(config):
    return parse_kernel_version(os.path.join(config.amdsev_dir, "linux", "guest", ".config"))


def host_kernel_version(config):
    return parse_kernel_version(os.path.join(config.amdsev_dir, "linux", "host", ".config"))


def build_and_install_amdsev(config, runner=subprocess.run):
    """Build the AMDSEV packages for config.amdsev_branch and install snp-release."""
    os.makedirs(config.dir.setup, exist_ok=True)
    amdsev = config.amdsev_dir
    checkout(amdsev, AMDSEV_URL, config.amdsev_branch, runner=runner)

    # ovmf/ must be re-initialized by build.sh on every build
    ovmf_dir = os.path.join(amdsev, "ovmf")
    if os.path.isdir(ovmf_dir):
        shutil.rmtree(ovmf_dir)

    run_command(["./build.sh", "--package"], cwd=amdsev, runner=runner)
    run_command(["sudo", "cp", "kvm.conf", "/etc/modprobe.d/"], cwd=amdsev, runner=runner)

    # Some distributions only leave a bzImage behind; standardize on vmlinuz-<version>.
    version = guest_kernel_version(config)
    guest_dir = os.path.join(amdsev, "linux", "guest")
    vmlinuz = os.path.join(guest_dir, f"vmlinuz-{version}")
    if not os.path.isfile(vmlinuz):
        bz_images = glob.glob(os.path.join(guest_dir, "**", "bzImage"), recursive=True)
        if not bz_images:
            raise ArtifactError(f"No guest kernel image found under {guest_dir}")
        shutil.copy(bz_images[0], vmlinuz)

    release = latest_dir(amdsev, "snp-release-")
    run_command(["sudo", "./install.sh"], cwd=release, runner=runner)
    run_command(["sudo", "usermod", "-a", "-G", "kvm", os.environ.get("USER", "root")], runner=runner)


def binary_paths(config):
    """Paths of the setup-host outputs, recorded in the setup manifest."""
    amdsev = config.amdsev_dir
    version = guest_kernel_version(config)
    debs = [p for p in glob.glob(os.path.join(amdsev, "linux", "linux-image*snp-guest*.deb"))
            if "dbg" not in os.path.basename(p)]
    if not debs:
        raise ArtifactError(f"No guest kernel package found under {os.path.join(amdsev, 'linux')}")

    return {
        "qemu": os.path.join(amdsev, "qemu", "build", "qemu-system-x86_64"),
        "ovmf": os.path.join(amdsev, "ovmf", "Build", "AmdSev", "DEBUG_GCC5", "FV", "OVMF.fd"),
        "kernel": os.path.join(amdsev, "linux", "guest", f"vmlinuz-{version}"),
        "initrd": os.path.join(config.dir.setup, f"initrd.img-{version}"),
        "guest_kernel_deb": sorted(debs)[0],
        "guest_kernel_version": version,
    }


def build_snpguest(attest_dir, runner=subprocess.run):
    """Build snpguest in release mode; returns the binary path."""
    os.makedirs(attest_dir, exist_ok=True)
    repo = os.path.join(attest_dir, "snpguest")
    checkout(repo, SNPGUEST_URL, SNPGUEST_BRANCH, runner=runner)
    run_command(["cargo", "build", "-r"], cwd=repo, runner=runner, env=cargo_env())

    binary = os.path.join(repo, "target", "release", "snpguest")
    if not os.path.isfile(binary):
        raise ArtifactError(f"snpguest binary was not produced: {binary}")
    print_info(f"snpguest built at {binary}")
    return binary
