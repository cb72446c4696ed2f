"""
Error types raised by the provisioning, launch and attestation phases.

Library code raises these; WorkflowEngine.run and the CLI in run.py turn them
into exit codes.
"""


class SnpFlowError(Exception):
    """Base class for every failure the workflow reports."""
    exit_code = 1


class UsageError(SnpFlowError):
    """Bad phase name, bad flag or bad configuration value."""
    exit_code = 2


class HostEnvironmentError(SnpFlowError):
    """A host capability is missing (e.g. SEV-SNP not enabled in firmware)."""

    def __init__(self, message, remediation=None):
        super().__init__(message)
        self.remediation = remediation

    def __str__(self):
        message = super().__str__()
        if self.remediation:
            return f"{message}\n{self.remediation}"
        return message


class CommandError(SnpFlowError):
    """A local host command exited with a non-zero status."""

    def __init__(self, command, returncode, output=""):
        super().__init__(f"Command failed ({returncode}): {command}")
        self.command = command
        self.returncode = returncode
        self.output = output


class ArtifactError(SnpFlowError):
    """A firmware, kernel, initrd, certificate or state file is missing or invalid."""


class MissingArtifact(ArtifactError):

    def __init__(self, kind, path):
        super().__init__(f"{kind} path specified does not exist: {path}")
        self.kind = kind
        self.path = path


class ConnectivityError(SnpFlowError):
    """The guest could not be reached over the remote transport."""


class PollTimeout(ConnectivityError):

    def __init__(self, description, attempts, last_error=None):
        message = f"Timed out after {attempts} attempts waiting for {description}"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


class RemoteCommandError(SnpFlowError):
    """A command run inside the guest exited non-zero."""

    def __init__(self, command, returncode, stdout="", stderr=""):
        super().__init__(f"Guest command failed ({returncode}): {command}")
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class MeasurementToolFailure(SnpFlowError):
    """The expected launch digest could not be produced."""


class UnsupportedCPU(SnpFlowError):

    def __init__(self, family, model, socket_type=None):
        detail = f"family={family} model={model}"
        if socket_type is not None:
            detail += f" socket={socket_type}"
        super().__init__(f"Invalid CPU: {detail}")
        self.family = family
        self.model = model
        self.socket_type = socket_type


class VerificationMismatch(SnpFlowError):
    """Launch measurement, certificate chain or report signature did not verify."""
    exit_code = 3


class ResidualProcessError(SnpFlowError):
    """Guest processes survived stop-guests."""

    def __init__(self, processes):
        listing = "\n".join(processes)
        super().__init__(f"qemu processes still exist:\n{listing}")
        self.processes = processes
