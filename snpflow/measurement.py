#!/usr/bin/env python3
"""
Expected versus actual SEV-SNP launch measurement.

The expected digest is computed locally with sev-snp-measure from the same
firmware, kernel, initrd, append line and vCPU topology that were handed to
QEMU. The actual digest is read from an attestation report that snpguest
requests inside the guest, after the certificate chain and the report
signature have been verified there.
"""

import enum
import os
import re
import struct

from sevsnpmeasure import guest as snp_guest
from sevsnpmeasure.vcpu_types import CPU_SIGS
from sevsnpmeasure.vmm_types import VMMType

from snpflow.errors import (
    ArtifactError,
    MeasurementToolFailure,
    MissingArtifact,
    RemoteCommandError,
    VerificationMismatch,
)
from snpflow.remote import Direction

# SNP guest policy feature bits used by QEMU for an SNP launch.
DEFAULT_GUEST_FEATURES = 0x1

# ATTESTATION_REPORT layout (SNP firmware ABI): the signed body ends at 0x2A0,
# VERSION is a little-endian u32 at 0x00, MEASUREMENT is 48 bytes at 0x90.
# The offset holds for every report version listed here.
REPORT_SIGNED_SIZE = 0x2A0
REPORT_VERSION_OFFSET = 0x00
REPORT_MEASUREMENT_OFFSET = 0x90
REPORT_MEASUREMENT_SIZE = 48
SUPPORTED_REPORT_VERSIONS = (2, 3, 5)

REPORT_FILE = "attestation-report.bin"
REQUEST_FILE = "request-data.txt"

_NOT_HEX = re.compile(r"[^0-9a-f]")


class Verdict(enum.Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"


class ReportFlavor(enum.Enum):
    DISPLAY = "display"
    BINARY = "binary"


def canonical_hex(value):
    """Drop whitespace and non-printable characters and lower-case the rest."""
    return "".join(ch for ch in value if ch.isprintable() and not ch.isspace()).lower()


class Measurement:
    """A launch digest as a canonical lower-case hex string."""

    __slots__ = ("hex",)

    def __init__(self, value):
        if isinstance(value, (bytes, bytearray)):
            value = value.hex()
        canonical = canonical_hex(str(value))
        if not canonical:
            raise MeasurementToolFailure("Measurement is empty")
        if _NOT_HEX.search(canonical):
            raise MeasurementToolFailure(f"Measurement is not hexadecimal: {value!r}")
        self.hex = canonical

    def __eq__(self, other):
        if isinstance(other, Measurement):
            return self.hex == other.hex
        if isinstance(other, str):
            return self.hex == canonical_hex(other)
        return NotImplemented

    def __hash__(self):
        return hash(self.hex)

    def __str__(self):
        return self.hex

    def __repr__(self):
        return f"Measurement({self.hex!r})"


def compare(expected, actual):
    """MATCHED when both digests are equal ignoring case and whitespace."""
    if Measurement(expected) == Measurement(actual):
        return Verdict.MATCHED
    return Verdict.MISMATCHED


def expected_measurement(ovmf, kernel, initrd, append, vcpus, vcpu_type,
                         guest_features=DEFAULT_GUEST_FEATURES,
                         calc=snp_guest.snp_calc_launch_digest):
    """
    Compute the launch digest sev-snp-measure expects for this boot configuration.

    Raises MissingArtifact if a binary is missing and MeasurementToolFailure
    if no digest comes back.
    """
    for kind, path in (("OVMF", ovmf), ("kernel", kernel), ("initrd", initrd)):
        if not path or not os.path.isfile(path):
            raise MissingArtifact(kind, path)

    try:
        vcpu_sig = CPU_SIGS[vcpu_type]
    except KeyError:
        raise MeasurementToolFailure(f"sev-snp-measure does not know vCPU type {vcpu_type!r}")

    try:
        digest = calc(int(vcpus), vcpu_sig, ovmf, kernel, initrd, append,
                      guest_features, "", VMMType.QEMU, dump_vmsa=False)
    except (ValueError, OSError, struct.error) as e:
        raise MeasurementToolFailure(f"sev-snp-measure failed: {e}")

    if not digest:
        raise MeasurementToolFailure("sev-snp-measure return value is empty")
    return Measurement(digest)


def expected_from_boot_record(record, calc=snp_guest.snp_calc_launch_digest):
    return expected_measurement(
        ovmf=record["ovmf"],
        kernel=record["kernel"],
        initrd=record["initrd"],
        append=record["append"],
        vcpus=record["vcpus"],
        vcpu_type=record["vcpu_type"],
        calc=calc,
    )


def parse_display_measurement(text, end_label="Host Data"):
    """
    Extract the digest from `snpguest display report` output.

    The value sits between the "Measurement:" label and the next labeled
    field, wrapped over several lines.
    """
    flat = " ".join(text.splitlines())
    match = re.search(r"Measurement:(.*?)" + re.escape(end_label), flat)
    if not match:
        raise ArtifactError("No Measurement field in the attestation report output")
    return Measurement(match.group(1))


def measurement_from_report(blob):
    """Read MEASUREMENT from a raw attestation report after checking its version."""
    if len(blob) < REPORT_SIGNED_SIZE:
        raise ArtifactError(f"Attestation report too short: {len(blob)} < {REPORT_SIGNED_SIZE} bytes")
    (version,) = struct.unpack_from("<I", blob, REPORT_VERSION_OFFSET)
    if version not in SUPPORTED_REPORT_VERSIONS:
        raise ArtifactError(f"Unsupported attestation report version {version}")
    start = REPORT_MEASUREMENT_OFFSET
    return Measurement(bytes(blob[start:start + REPORT_MEASUREMENT_SIZE]))


class SnpGuestClient:
    """Drives the snpguest binary copied into the guest's home directory."""

    def __init__(self, executor, binary="./snpguest", cert_dir="."):
        self.executor = executor
        self.binary = binary
        self.cert_dir = cert_dir

    def _run(self, args):
        return self.executor.exec(f"{self.binary} {args}").stdout

    def load_sev_guest_module(self):
        self.executor.exec(
            "sudo insmod /lib/modules/*/kernel/drivers/virt/coco/sev-guest/sev-guest.ko >/dev/null 2>&1 || true"
        )

    def request_report(self):
        """Ask the firmware for a fresh report bound to random request data."""
        return self.executor.exec(f"sudo {self.binary} report {REPORT_FILE} {REQUEST_FILE} --random").stdout

    def display_report(self):
        return self._run(f"display report {REPORT_FILE}")

    def fetch_ca(self, codename):
        return self._run(f"fetch ca pem {codename} {self.cert_dir} --endorser vcek")

    def fetch_vcek(self, codename):
        return self._run(f"fetch vcek pem {codename} {self.cert_dir} {REPORT_FILE}")

    def verify_certs(self):
        """Check that ARK, ASK and VCEK are properly signed."""
        try:
            return self._run(f"verify certs {self.cert_dir}")
        except RemoteCommandError as e:
            raise VerificationMismatch(f"Certificate chain verification failed: {e.stderr.strip() or e}")

    def verify_attestation(self):
        """Check the report's TCB and signature against the VCEK."""
        try:
            return self._run(f"verify attestation {self.cert_dir} {REPORT_FILE}")
        except RemoteCommandError as e:
            raise VerificationMismatch(f"Attestation report signature verification failed: {e.stderr.strip() or e}")

    def fetch_report(self, local_dir):
        """Copy the binary report out of the guest; returns the local path."""
        os.makedirs(local_dir, exist_ok=True)
        self.executor.copy(REPORT_FILE, local_dir, Direction.FROM_GUEST)
        return os.path.join(local_dir, REPORT_FILE)

    def actual_measurement(self, flavor=ReportFlavor.DISPLAY, local_dir=None):
        """Measurement embedded in the guest's report, read the way flavor selects."""
        if flavor is ReportFlavor.DISPLAY:
            return parse_display_measurement(self.display_report())
        if local_dir is None:
            raise ValueError("local_dir is required for the binary report flavor")
        with open(self.fetch_report(local_dir), "rb") as f:
            return measurement_from_report(f.read())
