import os
import subprocess

import pytest

from snpflow.config import Config


class FakeRunner:
    """
    Stands in for subprocess.run.

    Commands are matched against rules by substring, first match wins.
    A rule registered with times=N is used N times and then dropped.
    Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls = []
        self.rules = []

    def on(self, fragment, returncode=0, stdout="", stderr="", times=None, effect=None):
        self.rules.append({"fragment": fragment, "returncode": returncode, "stdout": stdout,
                           "stderr": stderr, "times": times, "effect": effect})
        return self

    @staticmethod
    def text(cmd):
        return cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        text = self.text(cmd)
        for rule in self.rules:
            if rule["fragment"] not in text:
                continue
            if rule["times"] is not None:
                rule["times"] -= 1
                if rule["times"] == 0:
                    self.rules.remove(rule)
            if rule["effect"] is not None:
                rule["effect"](cmd)
            return subprocess.CompletedProcess(cmd, rule["returncode"], rule["stdout"], rule["stderr"])
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def commands(self):
        return [self.text(cmd) for cmd, _ in self.calls]

    def ran(self, fragment):
        return any(fragment in text for text in self.commands())


class FakeProcess:
    """Minimal psutil.Process look-alike living in a FakeProcessTable."""

    def __init__(self, table, pid, cmdline):
        self.table = table
        self.pid = pid
        self.info = {"pid": pid, "cmdline": cmdline}
        self.killed = False

    def kill(self):
        self.killed = True
        if self in self.table.procs:
            self.table.procs.remove(self)


class FakeProcessTable:

    def __init__(self):
        self.procs = []
        self.next_pid = 4000

    def spawn(self, *cmdline):
        self.next_pid += 1
        proc = FakeProcess(self, self.next_pid, list(cmdline))
        self.procs.append(proc)
        return proc

    def process_iter(self, attrs=None):
        return list(self.procs)

    def wait_procs(self, procs, timeout=None):
        return [p for p in procs if p.killed], [p for p in procs if not p.killed]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def process_table():
    return FakeProcessTable()


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    return Config.from_env({"WORKING_DIR": str(tmp_path / "snp")})


def touch(path, content="x"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    return path
