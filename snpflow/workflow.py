#!/usr/bin/env python3
"""
Phase sequencing for setup-host, launch-guest, attest-guest and stop-guests.

Each phase is a fixed list of steps. A step whose completion marker (or an
equivalent artifact) is present is skipped, so re-running a phase after a
failure resumes at the first incomplete step. Any step failure aborts the
phase; the phase's captured logs are printed and a non-zero status returned.
"""

import enum
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from snpflow import cpuid, processes
from snpflow.build import binary_paths, build_and_install_amdsev, build_snpguest, host_kernel_version
from snpflow.dependencies import DEPENDENCIES_MARKER, install_dependencies, install_rust
from snpflow.errors import (
    ArtifactError,
    ConnectivityError,
    RemoteCommandError,
    SnpFlowError,
    UsageError,
    VerificationMismatch,
)
from snpflow.guest_image import create_cloud_init_image
from snpflow.host import reload_kvm_amd, run_command, set_grub_default, set_sev_device_acl, verify_snp_host
from snpflow.log import dump_logs, print_error, print_info, print_step, print_success, print_warning
from snpflow.measurement import ReportFlavor, SnpGuestClient, Verdict, compare, expected_from_boot_record
from snpflow.qemu_cmdline import QemuCommandLine, build_launch_cmdline
from snpflow.remote import Direction
from snpflow.retry import wait_until
from snpflow.session import GuestSession
from snpflow.state import PhaseDir, read_json

PHASES = ("setup-host", "launch-guest", "attest-guest", "stop-guests")

# Marker names
AMDSEV_BUILT_MARKER = "amdsev_already_built"
GRUB_DEFAULT_MARKER = "grub_default_already_set"
KERNEL_INSTALLED_MARKER = "guest_kernel_already_installed"
GUEST_SETUP_MARKER = "guest_already_setup"

BOOT_RECORD_FILE = "boot-params.json"
EXPECTED_MEASUREMENT_FILE = "expected-measurement.txt"
SNP_DMESG_PATTERN = "Memory Encryption Features active:.*SEV-SNP"

PHASE_LOGS = {
    "setup-host": ("setup", "*.log"),
    "launch-guest": ("launch", "qemu-trace.log"),
    "attest-guest": ("attest", "*.log"),
}


class LaunchState(enum.Enum):
    NEEDS_FIRST_BOOT = "needs-first-boot"
    PROVISIONED = "provisioned"


@dataclass
class Step:
    name: str
    action: Callable[[], object]
    done: Optional[Callable[[], bool]] = None


class WorkflowEngine:

    def __init__(self, config, runner=subprocess.run, poll=wait_until,
                 identify_cpu=None, calc_digest=None,
                 process_iter=psutil.process_iter, wait_procs=psutil.wait_procs,
                 report_flavor=ReportFlavor.DISPLAY):
        self.config = config
        self.runner = runner
        self.poll = poll
        self.identify_cpu = identify_cpu or (lambda: cpuid.identify(runner=self.runner))
        self.calc_digest = calc_digest
        self.process_iter = process_iter
        self.wait_procs = wait_procs
        self.report_flavor = report_flavor

        self.working = PhaseDir(config.dir.working)
        self.setup = PhaseDir(config.dir.setup)
        self.launch = PhaseDir(config.dir.launch)
        self.attest = PhaseDir(config.dir.attest)

        # Names of the steps that actually ran during the last phase.
        self.executed = []
        # State handed between attest-guest steps.
        self._attestation = {}

    # ------------------------------------------------------------------
    # Engine

    def run(self, phase):
        """Run one phase; returns 0 on success or the failing error's exit code."""
        try:
            if phase not in PHASES:
                raise UsageError(f"Unsupported Command: [{phase}]")
            self.working.ensure()
            self.run_steps(self.steps(phase))
        except SnpFlowError as e:
            if isinstance(e, VerificationMismatch):
                print_error(f"FAIL: {e}")
            else:
                print_error(str(e))
            if not isinstance(e, UsageError):
                self.dump_phase_logs(phase)
            return e.exit_code
        return 0

    def run_steps(self, steps):
        self.executed = []
        for step in steps:
            if step.done is not None and step.done():
                print_info(f"{step.name} previously completed")
                continue
            print_step(step.name)
            step.action()
            self.executed.append(step.name)

    def steps(self, phase):
        return {
            "setup-host": self.setup_host_steps,
            "launch-guest": self.launch_guest_steps,
            "attest-guest": self.attest_guest_steps,
            "stop-guests": self.stop_guests_steps,
        }[phase]()

    def dump_phase_logs(self, phase):
        if phase not in PHASE_LOGS:
            return
        directory, pattern = PHASE_LOGS[phase]
        dump_logs([getattr(self, directory).file(pattern)])

    # ------------------------------------------------------------------
    # setup-host

    def setup_host_steps(self):
        return [
            Step("install-dependencies", self.install_dependencies,
                 lambda: self.working.is_done(DEPENDENCIES_MARKER)),
            Step("build-amdsev", self.build_amdsev,
                 lambda: self.setup.is_done(AMDSEV_BUILT_MARKER)),
            Step("save-binary-paths", self.save_binary_paths, self.setup.has_manifest),
            Step("set-grub-default", self.set_grub_default,
                 lambda: self.setup.is_done(GRUB_DEFAULT_MARKER)),
        ]

    def install_dependencies(self):
        install_dependencies(self.config.dir.working, runner=self.runner)

    def build_amdsev(self):
        build_and_install_amdsev(self.config, runner=self.runner)
        self.setup.mark_done(AMDSEV_BUILT_MARKER)

    def save_binary_paths(self):
        self.setup.write_manifest(binary_paths(self.config))

    def set_grub_default(self):
        set_grub_default(host_kernel_version(self.config), runner=self.runner)
        self.setup.mark_done(GRUB_DEFAULT_MARKER)
        print_warning("The host must be rebooted for changes to take effect")

    # ------------------------------------------------------------------
    # launch-guest

    def launch_guest_steps(self):
        return [
            Step("check-setup", self.check_setup),
            Step("copy-launch-binaries", self.copy_launch_binaries, self.launch.has_manifest),
            Step("verify-snp-host", lambda: verify_snp_host(runner=self.runner), self.guest_running),
            Step("install-dependencies", self.install_dependencies,
                 lambda: self.working.is_done(DEPENDENCIES_MARKER)),
            Step("reload-kvm-amd", lambda: reload_kvm_amd(runner=self.runner), self.guest_running),
            Step("sev-device-acl", lambda: set_sev_device_acl(runner=self.runner), self.guest_running),
            Step("first-boot", self.first_boot,
                 lambda: self.launch_state() is LaunchState.PROVISIONED),
            Step("launch-snp-guest", self.launch_snp_guest, self.guest_running),
            Step("verify-snp-guest", self.verify_launched_guest),
        ]

    def check_setup(self):
        if not self.setup.exists() or not self.setup.has_manifest():
            raise ArtifactError("Setup directory does not exist, please run 'setup-host' prior to 'launch-guest'")
        if self.config.skip_image_create and not os.path.isfile(self.config.image):
            raise ArtifactError(f"Image file specified, but doesn't exist: {self.config.image}")

    def copy_launch_binaries(self):
        """Copy OVMF and the guest kernel next to the launch files and record their paths."""
        binaries = self.setup.read_manifest()
        self.launch.ensure()
        for kind in ("ovmf", "kernel"):
            if not os.path.isfile(binaries[kind]):
                raise ArtifactError(f"{kind} binary from setup-host is missing: {binaries[kind]}")
            shutil.copy(binaries[kind], self.launch.path)

        # The initrd arrives after the first guest boot, copied out of the guest.
        self.launch.write_manifest({
            "ovmf": self.launch.file(os.path.basename(binaries["ovmf"])),
            "kernel": self.launch.file(os.path.basename(binaries["kernel"])),
            "initrd": self.launch.file(os.path.basename(binaries["initrd"])),
        })

    def launch_state(self):
        if self.launch.is_done(KERNEL_INSTALLED_MARKER):
            return LaunchState.PROVISIONED
        return LaunchState.NEEDS_FIRST_BOOT

    def session(self):
        return GuestSession.from_config(self.config)

    def guest_processes(self, session=None):
        session = session or self.session()
        return processes.find_guest_processes(session.working_dir, session.image, session.pid(),
                                              process_iter=self.process_iter)

    def guest_running(self):
        return bool(self.guest_processes())

    def start_guest(self, cmdline, session):
        if self.guest_processes(session):
            raise ArtifactError("A guest using this image is already running, run 'stop-guests' first")
        session.save(self.launch.path)
        run_command([cmdline.path], runner=self.runner)

    def first_boot(self):
        """
        NEEDS_FIRST_BOOT -> PROVISIONED: boot the plain cloud image, install the
        SNP guest kernel, copy its initrd back and shut the guest down.
        """
        config = self.config
        setup = self.setup.read_manifest()
        session = self.session()

        if not config.skip_image_create:
            create_cloud_init_image(config, runner=self.runner)

        cmdline = QemuCommandLine(config.qemu_cmdline_file, setup["qemu"])
        build_launch_cmdline(cmdline, config, first_boot=True)
        self.start_guest(cmdline, session)

        executor = session.executor(runner=self.runner)
        deb = setup["guest_kernel_deb"]
        home = f"/home/{config.guest_user}"
        self.poll(lambda: executor.copy(deb, home, Direction.TO_GUEST),
                  description="guest SSH")
        executor.exec(f"sudo dpkg -i {home}/{os.path.basename(deb)}")
        executor.copy(f"/boot/initrd.img-{setup['guest_kernel_version']}", self.launch.path,
                      Direction.FROM_GUEST)
        try:
            executor.exec("sudo shutdown now")
        except (RemoteCommandError, ConnectivityError):
            # The connection drops while the guest goes down.
            pass

        self.launch.mark_done(KERNEL_INSTALLED_MARKER)
        self.poll(lambda: not self.guest_processes(session), description="guest shutdown")

    def launch_snp_guest(self):
        config = self.config
        binaries = self.launch.read_manifest()
        setup = self.setup.read_manifest()
        session = self.session()

        cmdline = QemuCommandLine(config.qemu_cmdline_file, setup["qemu"])
        build_launch_cmdline(cmdline, config, binaries=binaries)
        cmdline.write_boot_record(self.launch.file(BOOT_RECORD_FILE))
        self.start_guest(cmdline, session)

    def verify_snp_guest(self, executor):
        """Return the guest dmesg line showing SEV-SNP active, or "" if absent."""
        result = executor.exec(f'sudo dmesg | grep "{SNP_DMESG_PATTERN}"', check=False)
        return result.stdout.strip()

    def await_snp_guest(self, session):
        executor = session.executor(runner=self.runner)
        report = self.poll(lambda: self.verify_snp_guest(executor), description="SEV-SNP guest")
        print_info(f"DMESG REPORT: {report}")
        print_success("SNP is Enabled")
        return executor

    def verify_launched_guest(self):
        session = GuestSession.load(self.launch.path)
        self.await_snp_guest(session)
        print_info(f"Guest SSH port forwarded to host port: {session.port}")
        print_info("The guest is running in the background. Use the following command to access via SSH:")
        print(session.ssh_hint())

    # ------------------------------------------------------------------
    # attest-guest

    def attest_guest_steps(self):
        self._attestation = {}
        return [
            Step("await-guest", self.await_guest),
            Step("install-guest-tooling", self.install_guest_tooling, self.guest_tooling_present),
            Step("request-report", self.request_report),
            Step("fetch-certs", self.fetch_certs),
            Step("verify-certs", lambda: self._attestation["client"].verify_certs()),
            Step("verify-report-signature", lambda: self._attestation["client"].verify_attestation()),
            Step("compute-expected", self.compute_expected),
            Step("extract-actual", self.extract_actual),
            Step("compare", self.compare_measurements),
        ]

    def await_guest(self):
        session = GuestSession.load(self.launch.path)
        executor = self.await_snp_guest(session)
        self.attest.ensure()
        self._attestation.update(session=session, executor=executor,
                                 client=SnpGuestClient(executor))

    def guest_tooling_present(self):
        """True when snpguest was installed by install-guest-tooling and is still in the guest."""
        if not self.working.is_done(GUEST_SETUP_MARKER):
            return False
        executor = self._attestation["executor"]
        return executor.exec("test -x ./snpguest", check=False).ok

    def install_guest_tooling(self):
        install_rust(runner=self.runner)
        binary = build_snpguest(self.attest.path, runner=self.runner)
        session = self._attestation["session"]
        self._attestation["executor"].copy(binary, f"/home/{session.user}", Direction.TO_GUEST)
        self.working.mark_done(GUEST_SETUP_MARKER)

    def request_report(self):
        client = self._attestation["client"]
        client.load_sev_guest_module()
        client.request_report()
        print(client.display_report())

    def fetch_certs(self):
        identity = self.identify_cpu()
        print_info(f"Host CPU: {identity.codename} (family {identity.family}, model {identity.model})")
        client = self._attestation["client"]
        client.fetch_ca(identity.codename)
        client.fetch_vcek(identity.codename)

    def compute_expected(self):
        record = read_json(self.launch.file(BOOT_RECORD_FILE), "Boot parameter record")
        kwargs = {"calc": self.calc_digest} if self.calc_digest else {}
        expected = expected_from_boot_record(record, **kwargs)
        with open(self.attest.file(EXPECTED_MEASUREMENT_FILE), "w") as f:
            f.write(expected.hex + "\n")
        print_info(f"Expected Measurement (sev-snp-measure): {expected}")
        self._attestation["expected"] = expected

    def extract_actual(self):
        client = self._attestation["client"]
        actual = client.actual_measurement(self.report_flavor, local_dir=self.attest.path)
        print_info(f"Measurement from SNP Attestation Report: {actual}")
        self._attestation["actual"] = actual

    def compare_measurements(self):
        verdict = compare(self._attestation["expected"], self._attestation["actual"])
        if verdict is Verdict.MISMATCHED:
            raise VerificationMismatch("measurements do not match")
        print_success("The expected measurement matches the snp guest report measurement!")

    # ------------------------------------------------------------------
    # stop-guests

    def stop_guests_steps(self):
        return [Step("stop-guests", self.stop_guests)]

    def stop_guests(self):
        try:
            session = GuestSession.load(self.launch.path)
        except ArtifactError:
            session = self.session()
        processes.stop_guests(session.working_dir, session.image, session.pid(),
                              process_iter=self.process_iter, wait_procs=self.wait_procs)
