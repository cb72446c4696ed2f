#!/usr/bin/env python3
"""
Ordered QEMU launch options for an SEV-SNP guest.

The options are kept as (flag, value) entries in insertion order and written
to an executable command file after every append, so the file is both the
launch script and the audit record of the measured boot configuration.
sev-snp-measure recomputes the launch digest from a subset of these entries
(firmware, kernel, initrd, append line, vCPU count and model), so the order
and formatting must not drift between runs.
"""

import os
import shlex
import stat

from snpflow.errors import ArtifactError, MissingArtifact
from snpflow.state import write_json_atomic

SNP_GUEST_OBJECT = "sev-snp-guest,id=sev0,cbitpos=51,reduced-phys-bits=1,kernel-hashes=on"
# The command file is executed directly, without a shell in between.
SHEBANG = "#!/bin/sh\n"


class QemuCommandLine:
    """Append-only option list persisted to an executable command file."""

    def __init__(self, path, qemu_bin):
        self.path = path
        self.qemu_bin = qemu_bin
        self._entries = []

    def reset(self):
        """Start from an empty option list and truncate the command file."""
        self._entries = []
        self._persist()
        return self

    def append(self, flag, value=None):
        self._entries.append((flag, value))
        self._persist()
        return self

    def value_of(self, flag):
        """Value of the last entry with the given flag, or None."""
        for entry_flag, value in reversed(self._entries):
            if entry_flag == flag:
                return value
        return None

    @staticmethod
    def render_entry(flag, value):
        if value is None:
            return flag
        return f"{flag} {shlex.quote(str(value))}"

    def materialize(self):
        """Render the full command as a sh script, one option per continued line."""
        lines = [shlex.quote(self.qemu_bin)]
        lines.extend(self.render_entry(flag, value) for flag, value in self._entries)
        return SHEBANG + " \\\n".join(lines) + "\n"

    def boot_record(self):
        """
        The measured subset of the options, as sev-snp-measure takes them.

        Raises ArtifactError if the direct-boot entries are not present yet.
        """
        record = {
            "ovmf": self.value_of("-bios"),
            "kernel": self.value_of("-kernel"),
            "initrd": self.value_of("-initrd"),
            "append": self.value_of("-append"),
            "vcpu_type": self.value_of("-cpu"),
        }
        missing = [key for key, value in record.items() if value is None]
        smp = self.value_of("-smp")
        if smp is None:
            missing.append("vcpus")
        if missing:
            raise ArtifactError(f"Launch command has no {', '.join(missing)} option(s)")
        record["vcpus"] = int(str(smp).split(",")[0])
        return record

    def write_boot_record(self, path):
        write_json_atomic(path, self.boot_record())

    def _persist(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w") as f:
            f.write(self.materialize())
        mode = os.stat(self.path).st_mode
        os.chmod(self.path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def __repr__(self):
        return f"QemuCommandLine({self.path!r}, {len(self._entries)} entries)"


def build_launch_cmdline(cmdline, config, binaries=None, first_boot=False):
    """
    Fill cmdline with the launch options, always starting from an empty set.

    -pidfile directly follows -daemonize so stop-guests can find the guest; it
    is not one of the measured options and its position does not affect the
    launch digest.

    :param cmdline: QemuCommandLine to (re)build.
    :param config: snpflow.config.Config.
    :param binaries: dict with "ovmf", "kernel" and "initrd" paths; required
                     unless first_boot is set.
    :param first_boot: Plain KVM boot of the guest image, used to install the
                       guest kernel. The cloud-init seed is attached unless the
                       image was supplied by the user.
    """
    launch_dir = config.dir.launch
    cmdline.reset()

    # Basic virtual machine properties
    cmdline.append("-enable-kvm")
    cmdline.append("-cpu", config.cpu_model)
    cmdline.append("-machine", "q35")
    cmdline.append("-smp", config.guest_smp)
    cmdline.append("-m", f"{config.guest_mem_size_mb}M")
    cmdline.append("-no-reboot")
    cmdline.append("-vga", "std")
    cmdline.append("-monitor", "pty")
    cmdline.append("-daemonize")
    cmdline.append("-pidfile", config.pid_file)

    # Networking
    cmdline.append("-netdev", f"user,hostfwd=tcp::{config.host_ssh_port}-:22,id=vmnic")
    cmdline.append("-device", "virtio-net-pci,disable-legacy=on,iommu_platform=true,netdev=vmnic,romfile=")

    # Storage
    cmdline.append("-device", "virtio-scsi-pci,id=scsi0,disable-legacy=on,iommu_platform=true")
    cmdline.append("-device", "scsi-hd,drive=disk0")
    cmdline.append("-drive", f"if=none,id=disk0,format=qcow2,file={config.image}")
    # A user supplied image brings its own accounts; only a created image gets the seed.
    if first_boot and not config.skip_image_create:
        cmdline.append("-device", "scsi-hd,drive=disk1")
        cmdline.append("-drive", f"if=none,id=disk1,format=raw,file={config.seed_image}")

    # Standard and trace logging
    cmdline.append("-serial", f"file:{os.path.join(launch_dir, 'qemu.log')}")
    cmdline.append("--trace", "kvm_sev*")
    cmdline.append("-D", os.path.join(launch_dir, "qemu-trace.log"))

    # OVMF debug output goes to the serial log
    cmdline.append("-global", "isa-debugcon.iobase=0x402")

    if first_boot:
        return cmdline

    if not binaries:
        raise ArtifactError("Launch binaries are required for an SNP boot")
    for kind in ("ovmf", "initrd", "kernel"):
        path = binaries.get(kind)
        if not path or not os.path.isfile(path):
            raise MissingArtifact(kind, path)

    # Memory encryption and confidential-computing object
    cmdline.append("-machine", "memory-encryption=sev0,vmport=off")
    if config.upm:
        cmdline.append("-object", f"memory-backend-memfd,id=ram1,size={config.guest_mem_size_mb}M,share=true,prealloc=false")
        cmdline.append("-machine", "memory-backend=ram1")
    cmdline.append("-object", SNP_GUEST_OBJECT)

    # Direct boot binaries
    cmdline.append("-bios", binaries["ovmf"])
    cmdline.append("-initrd", binaries["initrd"])
    cmdline.append("-kernel", binaries["kernel"])
    cmdline.append("-append", config.kernel_append)
    return cmdline
