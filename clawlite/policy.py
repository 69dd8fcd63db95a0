"""Risk classification and execution policy for proxied requests."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RiskLevel(str, Enum):
    """How much damage a request could do to the host."""

    INFORMATIONAL = "informational"
    MUTATING = "mutating"
    HOST_CRITICAL = "host-critical"


_HOST_CRITICAL_HINTS = (
    "rm -rf /",
    "reboot",
    "shutdown",
    "poweroff",
    "usermod",
    "userdel",
    "iptables -f",
    "mkfs",
    "fdisk",
    "dd if=",
)

_MUTATING_HINTS = (
    "rm ",
    "mv ",
    "cp ",
    "sed -i",
    "tee ",
    "systemctl restart",
    "systemctl stop",
    "docker rm",
    "docker stop",
    "apt install",
    "apt remove",
)


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating a request against a policy."""

    risk: RiskLevel
    allowed: bool
    requires_confirmation: bool


@dataclass(frozen=True)
class Policy:
    """Rules deciding whether a request may be executed."""

    danger_full_access: bool = False
    require_confirm: bool = False

    def evaluate(self, command: str) -> PolicyDecision:
        """Classify the command and decide whether it may run."""
        risk = classify_risk(command)
        allowed = not (risk is RiskLevel.HOST_CRITICAL and not self.danger_full_access)
        return PolicyDecision(
            risk=risk,
            allowed=allowed,
            requires_confirmation=(
                allowed and self.require_confirm and risk is RiskLevel.HOST_CRITICAL
            ),
        )


def classify_risk(command: str) -> RiskLevel:
    """Return the risk level suggested by keywords in the command."""
    text = command.strip().lower()
    if not text:
        return RiskLevel.INFORMATIONAL
    if any(hint in text for hint in _HOST_CRITICAL_HINTS):
        return RiskLevel.HOST_CRITICAL
    if any(hint in text for hint in _MUTATING_HINTS):
        return RiskLevel.MUTATING
    return RiskLevel.INFORMATIONAL