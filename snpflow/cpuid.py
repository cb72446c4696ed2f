"""
Decode the AMD processor codename from CPUID leaf 0x80000001.

The codename selects which AMD KDS certificate chain snpguest fetches
(naples, rome, milan, genoa, bergamo, siena, turin).
"""

import re
import subprocess
from dataclasses import dataclass

from snpflow.errors import HostEnvironmentError, UnsupportedCPU

EXTENDED_SIGNATURE_LEAF = 0x80000001

# (family, first model, last model, codename); bounds are inclusive.
# A codename of None means the range needs the socket type to decide.
CODENAME_RANGES = (
    (23, 0, 15, "naples"),
    (23, 48, 63, "rome"),
    (25, 0, 15, "milan"),
    (25, 16, 31, "genoa"),
    (25, 160, 175, None),
    (26, 0, 17, "turin"),
)

SOCKET_CODENAMES = {
    (25, 4): "bergamo",
    (25, 8): "siena",
}


@dataclass(frozen=True)
class CPUIdentity:
    family: int
    model: int
    socket_type: int
    codename: str


def _bits(value, high, low):
    return (value >> low) & ((1 << (high - low + 1)) - 1)


def decode_family_model(eax):
    """
    Return (family, model) from the EAX signature value.

    family: base family [11:8], plus extended family [27:20] when the base
            family is 0xF.
    model:  extended model [19:16] as the high nibble, base model [7:4] as
            the low nibble.
    """
    base_family = _bits(eax, 11, 8)
    extended_family = _bits(eax, 27, 20)
    family = base_family + extended_family if base_family == 0xF else base_family

    base_model = _bits(eax, 7, 4)
    extended_model = _bits(eax, 19, 16)
    model = (extended_model << 4) | base_model
    return family, model


def decode_socket_type(ebx):
    """Package (socket) type from EBX[31:28]."""
    return _bits(ebx, 31, 28)


def codename(family, model, socket_type=None):
    for range_family, first, last, name in CODENAME_RANGES:
        if family != range_family or not first <= model <= last:
            continue
        if name is not None:
            return name
        name = SOCKET_CODENAMES.get((family, socket_type))
        if name is None:
            raise UnsupportedCPU(family, model, socket_type)
        return name
    raise UnsupportedCPU(family, model, socket_type)


def parse_register(cpuid_output, register):
    """Pull one register value out of `cpuid -1 -r` output."""
    match = re.search(rf"\b{register}=(0x[0-9a-fA-F]+)", cpuid_output)
    if not match:
        return None
    return int(match.group(1), 16)


def read_registers(leaf=EXTENDED_SIGNATURE_LEAF, runner=subprocess.run):
    """Return {"eax": .., "ebx": .., "ecx": .., "edx": ..} for a CPUID leaf."""
    try:
        completed = runner(["cpuid", "-1", "-r", "-l", hex(leaf)],
                           capture_output=True, text=True, check=False)
    except FileNotFoundError:
        raise HostEnvironmentError("The 'cpuid' tool is not installed.",
                                   "Install it with 'sudo apt install -y cpuid'.")
    if completed.returncode != 0:
        raise HostEnvironmentError(f"cpuid failed for leaf {hex(leaf)}: {completed.stderr.strip()}")

    registers = {}
    for name in ("eax", "ebx", "ecx", "edx"):
        value = parse_register(completed.stdout, name)
        if value is None:
            raise HostEnvironmentError(f"Failed to find register {name} for function {hex(leaf)}")
        registers[name] = value
    return registers


def identify(runner=subprocess.run):
    """Identify the host CPU; raises UnsupportedCPU outside the known ranges."""
    registers = read_registers(EXTENDED_SIGNATURE_LEAF, runner=runner)
    family, model = decode_family_model(registers["eax"])
    socket_type = decode_socket_type(registers["ebx"])
    return CPUIdentity(family, model, socket_type, codename(family, model, socket_type))
