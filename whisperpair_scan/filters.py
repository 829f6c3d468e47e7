"""Advertisement filter pipeline.

``accepts()`` decides whether one advertisement is relevant.  It is a pure
function of its arguments: the same address, name, RSSI and config always
give the same answer.  Rules run in order and stop at the first failure:

1. RSSI below ``min_rssi``
2. name does not match ``name_pattern`` (when one is set)
3. address does not start with any of ``mac_prefixes`` (when any are set)
4. address is not an RPA belonging to one of ``irks`` (when any are set)

Empty criteria never reject.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

# RSSI reported for advertisements that carry none
UNKNOWN_RSSI = -127

_PREFIX_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){0,5}$")


@dataclass(frozen=True)
class FilterConfig:
    min_rssi: int = -80
    name_pattern: Optional[re.Pattern] = None
    mac_prefixes: Tuple[str, ...] = ()
    irks: Tuple[bytes, ...] = ()

    @classmethod
    def build(cls, min_rssi: int = -80,
              name_pattern: Optional[str] = None,
              mac_prefixes: Iterable[str] = (),
              irks: Iterable[bytes] = ()) -> "FilterConfig":
        """Build a config from plain values.

        The name pattern is compiled case-insensitive and prefixes are
        validated and upper-cased.  Raises ValueError on bad input.
        """
        pattern = None
        if name_pattern:
            try:
                pattern = re.compile(name_pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"invalid name pattern {name_pattern!r}: {e}")
        prefixes = tuple(parse_mac_prefix(p) for p in mac_prefixes)
        return cls(min_rssi=int(min_rssi), name_pattern=pattern,
                   mac_prefixes=prefixes, irks=tuple(irks))


def normalize_address(address: Optional[str]) -> str:
    """Upper-case an address and unify ``-`` separators to ``:``."""
    return (address or "").strip().upper().replace("-", ":")


def parse_mac_prefix(prefix: str) -> str:
    """Validate a MAC prefix of one to six octets, e.g. ``3C:5A:B4``."""
    p = normalize_address(prefix)
    if not _PREFIX_RE.match(p):
        raise ValueError(
            f"Invalid MAC prefix '{prefix}'. "
            "Expected 1-6 colon-separated hex octets (e.g. 3C:5A:B4)")
    return p


def rejection_reason(address: str, name: str, rssi: int,
                     config: FilterConfig) -> Optional[str]:
    """Return why an advertisement is rejected, or None if it passes."""
    if rssi < config.min_rssi:
        return f"rssi {rssi} < {config.min_rssi}"

    if config.name_pattern is not None and not config.name_pattern.search(name or ""):
        return f"name {name!r} does not match /{config.name_pattern.pattern}/"

    upper = normalize_address(address)
    if config.mac_prefixes:
        if not any(upper.startswith(p.upper()) for p in config.mac_prefixes):
            return "address prefix not in allow-list"

    if config.irks:
        if not any(resolve_rpa(irk, upper) for irk in config.irks):
            return "address does not resolve against any IRK"

    return None


def accepts(address: str, name: str, rssi: int, config: FilterConfig) -> bool:
    return rejection_reason(address, name, rssi, config) is None


# ------------------------------------------------------------------
# Resolvable Private Addresses
# ------------------------------------------------------------------

def _bt_ah(irk: bytes, prand: bytes) -> bytes:
    # ah(k, r): low 24 bits of AES-128(k, r padded to one block)
    encryptor = Cipher(algorithms.AES(irk), modes.ECB()).encryptor()
    digest = encryptor.update(prand.rjust(16, b"\x00")) + encryptor.finalize()
    return digest[13:]


def _is_rpa(addr: bytes) -> bool:
    return len(addr) == 6 and addr[0] & 0xC0 == 0x40


def resolve_rpa(irk: bytes, address: str) -> bool:
    """Check whether *address* was generated from *irk*."""
    try:
        addr = bytes.fromhex(normalize_address(address).replace(":", ""))
    except ValueError:
        return False
    return _is_rpa(addr) and _bt_ah(irk, addr[:3]) == addr[3:]


def parse_irk(text: str) -> bytes:
    """Parse a 16-byte IRK.  ``0x`` and ``:``/``-`` separators are allowed."""
    digits = re.sub(r"[:\-]", "", text.strip())
    if digits[:2] in ("0x", "0X"):
        digits = digits[2:]
    if len(digits) != 32:
        raise ValueError(f"IRK needs 32 hex chars, got {len(digits)}")
    try:
        return bytes.fromhex(digits)
    except ValueError:
        raise ValueError(f"IRK has invalid hex characters: {text!r}") from None


def mask_irk(irk_hex: str) -> str:
    """Show only the first and last four characters of an IRK."""
    if len(irk_hex) <= 8:
        return irk_hex
    return f"{irk_hex[:4]}...{irk_hex[-4:]}"
