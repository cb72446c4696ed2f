import functools
import json
import os
import types

import pytest

from conftest import touch
from snpflow import guest_image, workflow
from snpflow.config import Config
from snpflow.errors import CommandError
from snpflow.qemu_cmdline import SNP_GUEST_OBJECT
from snpflow.retry import wait_until
from snpflow.session import GuestSession
from snpflow.workflow import Step, WorkflowEngine

GUEST_KERNEL = "6.6.0-rc1-snp-guest-1234"
DIGEST = bytes(range(48))

SNP_DMESG = "SEV-SNP enabled\n[    0.000000] Memory Encryption Features active: AMD SEV SEV-ES SEV-SNP\n"
CPUID_MILAN = "   0x80000001 0x00: eax=0x00a00f11 ebx=0x00000000 ecx=0x75c237ff edx=0x2fd3fbff\n"


def display_report(digest=DIGEST):
    pairs = [f"{b:02x}" for b in digest]
    rows = [" ".join(pairs[i:i + 16]) for i in range(0, len(pairs), 16)]
    return "Measurement:\n" + "\n".join(rows) + "\n\nHost Data:\n00 00\n"


no_sleep_poll = functools.partial(wait_until, sleep=lambda seconds: None, max_attempts=3)


def make_engine(config, runner, process_table=None, **kwargs):
    kwargs.setdefault("poll", no_sleep_poll)
    if process_table is not None:
        kwargs.setdefault("process_iter", process_table.process_iter)
        kwargs.setdefault("wait_procs", process_table.wait_procs)
    return WorkflowEngine(config, runner=runner, **kwargs)


class TestEngine:

    def test_skips_completed_steps(self, config, runner):
        ran = []
        engine = make_engine(config, runner)
        engine.run_steps([
            Step("one", lambda: ran.append("one"), lambda: True),
            Step("two", lambda: ran.append("two"), lambda: False),
            Step("three", lambda: ran.append("three")),
        ])
        assert ran == ["two", "three"]
        assert engine.executed == ["two", "three"]

    def test_unknown_phase(self, config, runner, capsys):
        assert make_engine(config, runner).run("launch") == 2
        assert "Unsupported Command" in capsys.readouterr().err

    def test_failure_stops_phase_and_dumps_logs(self, config, runner, monkeypatch, capsys):
        touch(os.path.join(config.dir.setup, "build.log"), "ovmf: nasm not found\n")

        def fail(config, runner):
            raise CommandError("./build.sh --package", 2)

        monkeypatch.setattr(workflow, "build_and_install_amdsev", fail)
        engine = make_engine(config, runner)

        assert engine.run("setup-host") == 1
        assert engine.executed == ["install-dependencies"]
        err = capsys.readouterr().err
        assert "Command failed (2): ./build.sh --package" in err
        assert "ovmf: nasm not found" in err


    def test_missing_host_tool_fails_phase(self, config, runner, capsys):
        touch(os.path.join(config.dir.setup, "build.log"), "previous build output\n")

        def missing(cmd):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])

        runner.on("sudo", effect=missing)
        engine = make_engine(config, runner)

        assert engine.run("setup-host") == 1
        err = capsys.readouterr().err
        assert "Could not run 'sudo apt update'" in err
        assert "previous build output" in err


@pytest.fixture
def fake_setup(
monkeypatch, config):
    """Replace the AMDSEV build with a setup directory holding fake binaries."""
    setup = config.dir.setup
    binaries = {
        "qemu": touch(os.path.join(setup, "AMDSEV", "qemu", "build", "qemu-system-x86_64")),
        "ovmf": touch(os.path.join(setup, "AMDSEV", "ovmf", "OVMF.fd")),
        "kernel": touch(os.path.join(setup, "AMDSEV", "linux", "guest", f"vmlinuz-{GUEST_KERNEL}")),
        "initrd": os.path.join(setup, f"initrd.img-{GUEST_KERNEL}"),
        "guest_kernel_deb": touch(os.path.join(setup, "AMDSEV", "linux", "linux-image-snp-guest.deb")),
        "guest_kernel_version": GUEST_KERNEL,
    }
    calls = []
    monkeypatch.setattr(workflow, "build_and_install_amdsev", lambda config, runner: calls.append("build"))
    monkeypatch.setattr(workflow, "binary_paths", lambda config: dict(binaries))
    monkeypatch.setattr(workflow, "host_kernel_version", lambda config: "6.6.0-snp-host")
    monkeypatch.setattr(workflow, "set_grub_default", lambda version, runner: calls.append("grub"))
    return types.SimpleNamespace(binaries=binaries, calls=calls)


class TestSetupHost:

    def test_first_run(self, config, runner, fake_setup, capsys):
        engine = make_engine(config, runner)
        assert engine.run("setup-host") == 0
        assert engine.executed == ["install-dependencies", "build-amdsev", "save-binary-paths",
                                   "set-grub-default"]
        assert fake_setup.calls == ["build", "grub"]
        assert runner.ran("apt install -y")
        with open(os.path.join(config.dir.setup, "manifest.json")) as f:
            assert json.load(f)["guest_kernel_version"] == GUEST_KERNEL
        assert "must be rebooted" in capsys.readouterr().out

    def test_second_run_does_nothing(self, config, runner, fake_setup):
        make_engine(config, runner).run("setup-host")
        commands = len(runner.calls)

        engine = make_engine(config, runner)
        assert engine.run("setup-host") == 0
        assert engine.executed == []
        assert fake_setup.calls == ["build", "grub"]
        assert len(runner.calls) == commands

    def test_resumes_after_failure(self, config, runner, fake_setup, monkeypatch):
        def broken(config, runner):
            raise CommandError("./build.sh --package", 1)

        monkeypatch.setattr(workflow, "build_and_install_amdsev", broken)
        assert make_engine(config, runner).run("setup-host") == 1
        assert not os.path.exists(os.path.join(config.dir.setup, "manifest.json"))

        monkeypatch.setattr(workflow, "build_and_install_amdsev", lambda config, runner: None)
        engine = make_engine(config, runner)
        assert engine.run("setup-host") == 0
        assert engine.executed == ["build-amdsev", "save-binary-paths", "set-grub-default"]


def fake_guest(config, runner, process_table, binaries):
    """
    Fake QEMU and guest for a host where setup-host already ran.

    Running the command file spawns a guest process; "shutdown now" stops it.
    Returns the command file contents seen at each guest start.
    """
    workflow.PhaseDir(config.dir.setup).write_manifest(dict(binaries))
    guests = []
    launches = []

    def start(cmd):
        with open(cmd[0]) as f:
            launches.append(f.read())
        guests.append(process_table.spawn(binaries["qemu"], "-drive", f"file={config.image}"))

    def shutdown(cmd):
        for proc in guests:
            proc.kill()

    def copy_initrd(cmd):
        touch(os.path.join(cmd[-1], f"initrd.img-{GUEST_KERNEL}"))

    runner.on("qemu.cmdline", effect=start)
    runner.on("shutdown now", returncode=255, effect=shutdown)
    runner.on(f"/boot/initrd.img-{GUEST_KERNEL}", effect=copy_initrd)
    runner.on("dmesg", stdout=SNP_DMESG)
    runner.on("display report", stdout=display_report())
    runner.on("cpuid", stdout=CPUID_MILAN)
    return launches


@pytest.fixture
def guest_host(config, runner, process_table, fake_setup):
    """A set-up host launching a user supplied image (-i)."""
    image = touch(os.path.join(config.dir.launch, "snp-guest.img"))
    touch(config.guest_ssh_key_path)
    byo = Config.from_env({"WORKING_DIR": config.dir.working}, image=image)
    fake_guest(byo, runner, process_table, fake_setup.binaries)
    return byo


@pytest.fixture
def fresh_host(config, runner, process_table, fake_setup, monkeypatch):
    """A set-up host with no guest image yet; the cloud image download is faked."""
    downloads = []

    def download(url, dest, session=None):
        downloads.append(url)
        touch(dest, "qcow")

    monkeypatch.setattr(guest_image, "download_file", download)
    runner.on("cloud-localds", effect=lambda cmd: touch(cmd[1]))
    launches = fake_guest(config, runner, process_table, fake_setup.binaries)
    return types.SimpleNamespace(config=config, launches=launches, downloads=downloads)


class TestLaunchGuest:

    def test_created_image_boots_with_seed_once(self, fresh_host, runner, process_table):
        config = fresh_host.config
        assert make_engine(config, runner, process_table).run("launch-guest") == 0
        engine = make_engine(config, runner, process_table)
        assert engine.run("launch-guest") == 0
        assert engine.executed == ["check-setup", "verify-snp-guest"]

        first_boot, snp_boot = fresh_host.launches
        seed = f"if=none,id=disk1,format=raw,file={config.seed_image}"
        assert seed in first_boot
        assert seed not in snp_boot
        assert "-bios" not in first_boot
        assert SNP_GUEST_OBJECT in snp_boot

        commands = runner.commands()
        assert sum(c.startswith("cloud-localds") for c in commands) == 1
        assert sum(c.startswith("qemu-img resize") for c in commands) == 1
        assert fresh_host.downloads == [guest_image.CLOUD_INIT_IMAGE_URL]
        assert os.path.isfile(config.guest_ssh_key_path + ".pub")

    def test_requires_setup(self, config, runner, capsys):
        assert make_engine(config, runner).run("launch-guest") == 1
        assert "please run 'setup-host'" in capsys.readouterr().err

    def test_first_launch(self, guest_host, runner, process_table):
        config = guest_host
        engine = make_engine(config, runner, process_table)

        assert engine.run("launch-guest") == 0
        assert engine.executed == [
            "check-setup", "copy-launch-binaries", "verify-snp-host", "install-dependencies",
            "reload-kvm-amd", "sev-device-acl", "first-boot", "launch-snp-guest", "verify-snp-guest",
        ]
        commands = runner.commands()
        dpkg = next(i for i, c in enumerate(commands) if "dpkg -i" in c)
        shutdown = next(i for i, c in enumerate(commands) if "shutdown now" in c)
        assert dpkg < shutdown
        assert runner.ran("modprobe kvm_amd debug_swap=0")

        launch = workflow.PhaseDir(config.dir.launch)
        assert launch.is_done(workflow.KERNEL_INSTALLED_MARKER)
        assert len(process_table.procs) == 1

        with open(launch.file("boot-params.json")) as f:
            record = json.load(f)
        assert record["vcpus"] == 4
        assert record["initrd"] == launch.file(f"initrd.img-{GUEST_KERNEL}")
        assert record["kernel"] == launch.file(f"vmlinuz-{GUEST_KERNEL}")

        session = GuestSession.load(config.dir.launch)
        assert session.port == 10022
        assert session.image == config.image

    def test_second_launch_is_idempotent(self, guest_host, runner, process_table):
        make_engine(guest_host, runner, process_table).run("launch-guest")
        before = len(runner.calls)

        engine = make_engine(guest_host, runner, process_table)
        assert engine.run("launch-guest") == 0
        assert engine.executed == ["check-setup", "verify-snp-guest"]
        new_commands = runner.commands()[before:]
        assert not any("modprobe" in c or "dpkg" in c or "qemu.cmdline" in c for c in new_commands)
        assert len(process_table.procs) == 1

    def test_first_boot_happens_once(self, guest_host, runner, process_table):
        make_engine(guest_host, runner, process_table).run("launch-guest")
        make_engine(guest_host, runner, process_table).run("stop-guests")
        assert process_table.procs == []

        engine = make_engine(guest_host, runner, process_table)
        assert engine.run("launch-guest") == 0
        assert "first-boot" not in engine.executed
        assert "launch-snp-guest" in engine.executed
        assert sum("dpkg -i" in c for c in runner.commands()) == 1

    def test_failed_first_boot_is_retried(self, guest_host, runner, process_table):
        runner.rules.insert(0, {"fragment": "dpkg -i", "returncode": 1, "stdout": "",
                                "stderr": "dpkg: error", "times": 1, "effect": None})
        assert make_engine(guest_host, runner, process_table).run("launch-guest") == 1
        launch = workflow.PhaseDir(guest_host.dir.launch)
        assert not launch.is_done(workflow.KERNEL_INSTALLED_MARKER)

        make_engine(guest_host, runner, process_table).run("stop-guests")
        engine = make_engine(guest_host, runner, process_table)
        assert engine.run("launch-guest") == 0
        assert "first-boot" in engine.executed
        assert launch.is_done(workflow.KERNEL_INSTALLED_MARKER)

    def test_guest_without_snp(self, guest_host, runner, process_table, capsys):
        runner.rules = [r for r in runner.rules if r["fragment"] != "dmesg"]
        runner.on("Memory Encryption", returncode=1)
        runner.on("sudo dmesg", stdout="SEV-SNP enabled\n")

        assert make_engine(guest_host, runner, process_table).run("launch-guest") == 1
        assert "Timed out after 3 attempts waiting for SEV-SNP guest" in capsys.readouterr().err


class TestAttestGuest:

    def launched(self, guest_host, runner, process_table):
        assert make_engine(guest_host, runner, process_table).run("launch-guest") == 0
        workflow.PhaseDir(guest_host.dir.working).mark_done(workflow.GUEST_SETUP_MARKER)
        return guest_host

    def test_requires_session(self, config, runner, capsys):
        assert make_engine(config, runner).run("attest-guest") == 1
        assert "run 'launch-guest' first" in capsys.readouterr().err

    def test_matching_measurement(self, guest_host, runner, process_table, capsys):
        config = self.launched(guest_host, runner, process_table)
        calc = lambda *args, **kwargs: DIGEST
        engine = make_engine(config, runner, process_table, calc_digest=calc)

        assert engine.run("attest-guest") == 0
        assert engine.executed == [
            "await-guest", "request-report", "fetch-certs", "verify-certs",
            "verify-report-signature", "compute-expected", "extract-actual", "compare",
        ]
        assert runner.ran("./snpguest fetch ca pem milan . --endorser vcek")
        with open(os.path.join(config.dir.attest, "expected-measurement.txt")) as f:
            assert f.read().strip() == DIGEST.hex()
        assert "matches the snp guest report measurement" in capsys.readouterr().out

    def test_mismatch_exits_3(self, guest_host, runner, process_table, capsys):
        config = self.launched(guest_host, runner, process_table)
        engine = make_engine(config, runner, process_table, calc_digest=lambda *a, **k: bytes(48))

        assert engine.run("attest-guest") == 3
        assert "FAIL: measurements do not match" in capsys.readouterr().err

    def test_bad_certificate_chain_exits_3(self, guest_host, runner, process_table):
        config = self.launched(guest_host, runner, process_table)
        runner.rules.insert(0, {"fragment": "verify certs", "returncode": 1, "stdout": "",
                                "stderr": "ASK not signed by ARK", "times": None, "effect": None})
        engine = make_engine(config, runner, process_table, calc_digest=lambda *a, **k: DIGEST)

        assert engine.run("attest-guest") == 3
        assert "compute-expected" not in engine.executed

    def test_installs_tooling_when_missing(self, guest_host, runner, process_table, monkeypatch):
        config = self.launched(guest_host, runner, process_table)
        runner.rules.insert(0, {"fragment": "test -x ./snpguest", "returncode": 1, "stdout": "",
                                "stderr": "", "times": 1, "effect": None})
        built = []
        monkeypatch.setattr(workflow, "install_rust", lambda runner: built.append("rust"))
        monkeypatch.setattr(workflow, "build_snpguest",
                            lambda attest_dir, runner: built.append("snpguest") or "/tmp/snpguest")
        engine = make_engine(config, runner, process_table, calc_digest=lambda *a, **k: DIGEST)

        assert engine.run("attest-guest") == 0
        assert built == ["rust", "snpguest"]
        assert "install-guest-tooling" in engine.executed
        assert workflow.PhaseDir(config.dir.working).is_done(workflow.GUEST_SETUP_MARKER)

    def test_first_attest_installs_tooling(self, guest_host, runner, process_table, monkeypatch):
        assert make_engine(guest_host, runner, process_table).run("launch-guest") == 0
        built = []
        monkeypatch.setattr(workflow, "install_rust", lambda runner: built.append("rust"))
        monkeypatch.setattr(workflow, "build_snpguest",
                            lambda attest_dir, runner: built.append("snpguest") or "/tmp/snpguest")
        engine = make_engine(guest_host, runner, process_table, calc_digest=lambda *a, **k: DIGEST)

        assert engine.run("attest-guest") == 0
        assert built == ["rust", "snpguest"]
        assert not runner.ran("test -x ./snpguest")

        engine = make_engine(guest_host, runner, process_table, calc_digest=lambda *a, **k: DIGEST)
        assert engine.run("attest-guest") == 0
        assert "install-guest-tooling" not in engine.executed
        assert built == ["rust", "snpguest"]


class TestStopGuests:

    def test_stops_launched_guest(self, guest_host, runner, process_table):
        make_engine(guest_host, runner, process_table).run("launch-guest")
        assert len(process_table.procs) == 1

        assert make_engine(guest_host, runner, process_table).run("stop-guests") == 0
        assert process_table.procs == []

    def test_nothing_to_stop(self, config, runner, process_table):
        assert make_engine(config, runner, process_table).run("stop-guests") == 0
