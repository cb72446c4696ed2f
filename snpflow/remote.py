#!/usr/bin/env python3
"""
Command execution and file transfer against a running guest over ssh/scp.

The transport never prompts: host key checking and password authentication
are off, and the guest is reached with its generated key through the
forwarded localhost port.
"""

import enum
import subprocess
import sys
from dataclasses import dataclass

from snpflow.errors import ConnectivityError, RemoteCommandError

# ssh and scp exit with 255 when the connection itself fails.
SSH_TRANSPORT_FAILURE = 255
CONNECT_TIMEOUT = 1


class Direction(enum.Enum):
    TO_GUEST = "to-guest"
    FROM_GUEST = "from-guest"


@dataclass
class RemoteResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self):
        return self.exit_code == 0


class RemoteExecutor:
    """Runs commands in one guest identified by host, port, key and user."""

    def __init__(self, host, port, key_path, user, connect_timeout=CONNECT_TIMEOUT,
                 runner=subprocess.run):
        self.host = host
        self.port = port
        self.key_path = key_path
        self.user = user
        self.connect_timeout = connect_timeout
        self.runner = runner

    @property
    def target(self):
        return f"{self.user}@{self.host}"

    def transport_options(self):
        return [
            "-i", self.key_path,
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "PasswordAuthentication=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "LogLevel=ERROR",
        ]

    def ssh_command(self, command):
        return ["ssh", "-p", str(self.port)] + self.transport_options() + [self.target, command]

    def scp_command(self, source, dest, direction):
        if direction is Direction.TO_GUEST:
            source_arg, dest_arg = source, f"{self.target}:{dest}"
        elif direction is Direction.FROM_GUEST:
            source_arg, dest_arg = f"{self.target}:{source}", dest
        else:
            raise ValueError(f"Unknown copy direction: {direction!r}")
        return ["scp", "-r", "-P", str(self.port)] + self.transport_options() + [source_arg, dest_arg]

    def _run(self, argv):
        try:
            completed = self.runner(argv, capture_output=True, text=True, check=False)
        except OSError as e:
            raise ConnectivityError(f"Could not start {argv[0]}: {e}")
        return RemoteResult(completed.stdout or "", completed.stderr or "", completed.returncode)

    def exec(self, command, check=True):
        """
        Run command in the guest.

        Returns a RemoteResult with stdout, stderr and the exit code kept
        separate. Transport failures raise ConnectivityError. With check=True a
        non-zero exit prints both streams and raises RemoteCommandError.
        """
        if not command:
            raise ValueError("No guest command specified")

        result = self._run(self.ssh_command(command))
        if result.exit_code == SSH_TRANSPORT_FAILURE:
            raise ConnectivityError(
                f"Could not reach {self.target} on port {self.port}: {result.stderr.strip()}"
            )
        if check and not result.ok:
            if result.stdout:
                sys.stderr.write(result.stdout.rstrip("\n") + "\n")
            if result.stderr:
                sys.stderr.write(result.stderr.rstrip("\n") + "\n")
            raise RemoteCommandError(command, result.exit_code, result.stdout, result.stderr)
        return result

    def copy(self, source, dest, direction):
        """Copy source to dest, recursively, in the given Direction."""
        if not source:
            raise ValueError("No scp source specified")
        if not dest:
            raise ValueError("No scp target specified")

        result = self._run(self.scp_command(source, dest, direction))
        if result.exit_code == SSH_TRANSPORT_FAILURE:
            raise ConnectivityError(f"scp to {self.target} failed: {result.stderr.strip()}")
        if not result.ok:
            raise RemoteCommandError(f"scp {source} {dest}", result.exit_code,
                                     result.stdout, result.stderr)
        return result

    def __repr__(self):
        return f"RemoteExecutor({self.target}:{self.port})"
