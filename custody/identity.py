"""
Agent Identity

The one signing identity the agent acts as, the vault it serves, and the
recipient allowlist derived from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from eth_account import Account
from eth_utils import is_address, to_checksum_address

from custody.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Address helpers
# ---------------------------------------------------------------------------

def normalize_address(value: str, setting: str = "address") -> str:
    """Checksum an address or raise ConfigurationError naming the setting."""
    value = (value or "").strip()
    if not value.startswith("0x") or not is_address(value):
        raise ConfigurationError(f"{setting} is not a valid address: {value!r}")
    return to_checksum_address(value)


def parse_address_list(text: str | None, setting: str = "address list") -> list[str]:
    """Comma-separated addresses; blanks are skipped."""
    if not text:
        return []
    return [normalize_address(part, setting) for part in text.split(",") if part.strip()]


def load_account(private_key: str):
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("PRIVATE_KEY is not a valid private key") from exc


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

@dataclass
class AgentIdentity:
    address: str
    vault: str
    governor: str
    authorized_recipients: list[str] = field(default_factory=list)

    def allowed_recipients(self) -> set[str]:
        allowed = {self.address.lower(), self.vault.lower()}
        allowed.update(a.lower() for a in self.authorized_recipients)
        return allowed

    def is_allowed_recipient(self, address: str) -> bool:
        return address.lower() in self.allowed_recipients()

    def disallowed(self, recipients: Iterable[str]) -> list[str]:
        return [r for r in recipients if not self.is_allowed_recipient(r)]
