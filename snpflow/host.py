#!/usr/bin/env python3
import glob
import os
import re
import shlex
import subprocess

from snpflow.config import AMDSEV_DEFAULT_BRANCH, AMDSEV_URL
from snpflow.errors import ArtifactError, CommandError, HostEnvironmentError
from snpflow.log import print_command, print_info

MISSING_TOOL_HINT = "Install the missing tool and make sure it is on PATH; setup-host installs the build dependencies."


def run_command(cmd, cwd=None, runner=subprocess.run, env=None):
    """
    Run a host command and raise CommandError if it fails.

    cmd may be a string (run through the shell) or an argument list. A
    command that cannot be started at all raises HostEnvironmentError.
    """
    shown = cmd if isinstance(cmd, str) else " ".join(shlex.quote(c) for c in cmd)
    print_command(shown)
    try:
        completed = runner(cmd, cwd=cwd, shell=isinstance(cmd, str), check=False, env=env)
    except OSError as e:
        raise HostEnvironmentError(f"Could not run '{shown}': {e}", MISSING_TOOL_HINT)
    if completed.returncode != 0:
        raise CommandError(shown, completed.returncode, getattr(completed, "stdout", "") or "")


def verify_snp_host(runner=subprocess.run):
    """Check the host kernel log for SEV-SNP support."""
    try:
        completed = runner(["sudo", "dmesg"], capture_output=True, text=True, check=False)
    except OSError as e:
        raise HostEnvironmentError(f"Could not read the host kernel log: {e}", MISSING_TOOL_HINT)
    if re.search("SEV-SNP enabled", completed.stdout or "", re.IGNORECASE):
        print_info("SEV-SNP enabled on the host")
        return
    url = AMDSEV_URL[:-len(".git")] if AMDSEV_URL.endswith(".git") else AMDSEV_URL
    raise HostEnvironmentError(
        "SEV-SNP not enabled on the host.",
        f"Please follow these steps to enable:\n    {url}/tree/{AMDSEV_DEFAULT_BRANCH}#prepare-host",
    )


def reload_kvm_amd(runner=subprocess.run):
    """Reload kvm_amd with debug_swap off so the launch digest matches sev-snp-measure."""
    run_command(["sudo", "modprobe", "-r", "kvm_amd"], runner=runner)
    run_command(["sudo", "modprobe", "kvm_amd", "debug_swap=0"], runner=runner)


def set_sev_device_acl(runner=subprocess.run):
    # /dev/sev is recreated when kvm_amd reloads, so the ACL is set on every launch.
    run_command(["sudo", "setfacl", "-m", "g:kvm:rw", "/dev/sev"], runner=runner)


def parse_kernel_version(config_path, header_pattern=r"^# Linux/\S+ (\S+) Kernel Configuration$"):
    """
    Return "<version><CONFIG_LOCALVERSION>" from a kernel .config file.

    The version comes from the "# Linux/x86 6.x.y Kernel Configuration"
    header line.
    """
    try:
        with open(config_path, "r") as f:
            content = f.read()
    except FileNotFoundError:
        raise ArtifactError(f"Kernel config not found: {config_path}")

    header = re.search(header_pattern, content, re.MULTILINE)
    if not header:
        raise ArtifactError(f"No kernel version header in {config_path}")
    local = re.search(r'^CONFIG_LOCALVERSION="([^"]*)"', content, re.MULTILINE)
    return header.group(1) + (local.group(1) if local else "")


def find_snp_grub_entry(grub_cfg, kernel_version):
    """
    Locate the "submenu>menuentry" pair for kernel_version in grub.cfg text.

    Returns None when the kernel has no (non-recovery) entry.
    """
    submenu = None
    for line in grub_cfg.splitlines():
        stripped = line.strip()
        match = re.match(r"submenu\s+'([^']*)'", stripped)
        if match and "Advanced options" in match.group(1):
            submenu = match.group(1)
            continue
        match = re.match(r"menuentry\s+'([^']*)'", stripped)
        if match and kernel_version in match.group(1) and "(recovery mode)" not in match.group(1):
            if submenu is None:
                return match.group(1)
            return f"{submenu}>{match.group(1)}"
    return None


def set_grub_default(kernel_version, grub_default="/etc/default/grub",
                     grub_cfg="/boot/grub/grub.cfg", runner=subprocess.run):
    """Make the SNP host kernel the default grub entry. Keeps a backup of the old file."""
    with open(grub_default, "r") as f:
        current = f.read()
    for line in current.splitlines():
        if not line.startswith("#") and kernel_version in line:
            print_info(f"Default grub already has SNP [{kernel_version}] set")
            return False

    with open(grub_cfg, "r") as f:
        entry = find_snp_grub_entry(f.read(), kernel_version)
    if not entry:
        raise HostEnvironmentError(f"No grub entry found for SNP host kernel {kernel_version}",
                                   "Check that the SNP host kernel package installed correctly.")

    run_command(["sudo", "cp", grub_default, grub_default + "_bkup"], runner=runner)
    run_command(["sudo", "sed", "-i", "-e", f's|^\\(GRUB_DEFAULT=\\).*$|\\1"{entry}"|g', grub_default],
                runner=runner)
    run_command(["sudo", "update-grub"], runner=runner)
    return True


def latest_dir(parent, prefix):
    """Newest directory under parent whose name starts with prefix."""
    candidates = [p for p in glob.glob(os.path.join(parent, prefix + "*")) if os.path.isdir(p)]
    if not candidates:
        raise ArtifactError(f"No {prefix}* directory under {parent}")
    return max(candidates, key=os.path.getmtime)
