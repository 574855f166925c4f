"""Proxy bypass domain reconciliation.

Domains in the bypass list are fetched directly instead of through spoofdpi.
The user may already have entries there, so the reconciler never overwrites
the list blindly:
- Before the first change of a proxy session the current list is snapshotted
- Requested domains are merged after the snapshot entries
- On restore the snapshot is written back verbatim

The module also builds the effective set of domains from named groups, such as
the built-in Discord group and a free-text custom list.

Example:
    reconciler = BypassReconciler(networksetup, configurator.discover_active_service)
    reconciler.apply(effective_bypass_domains(DISCORD_BYPASS_DOMAINS))
    ...
    reconciler.restore()
"""

import re
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Final

from loguru import logger

from spoofdpi_supervisor.core.network import NetworkSetup
from spoofdpi_supervisor.core.utils.utils import unique

# Screen sharing and Go Live break when voice traffic goes through spoofdpi
DISCORD_BYPASS_DOMAINS: Final = (
    "discord.com",
    "*.discord.com",
    "discord.gg",
    "*.discord.gg",
    "discordapp.com",
    "*.discordapp.com",
    "discordapp.net",
    "*.discordapp.net",
    "discord.media",
    "*.discord.media",
    "gateway.discord.gg",
)

NO_BYPASS_DOMAINS: Final = "There aren't any bypass domains"
DOMAIN_SEPARATORS: Final = re.compile(r"[,\s]+")


def parse_domain_list(raw: str) -> list[str]:
    """Split free text on commas and whitespace into unique domains."""
    return unique(part for part in DOMAIN_SEPARATORS.split(raw) if part)


def effective_bypass_domains(*groups: Iterable[str]) -> list[str]:
    """Union of the given domain groups, first occurrence order preserved."""
    return unique(domain for group in groups for domain in group)


@dataclass(frozen=True)
class BypassSnapshot:
    """Bypass list as it was before the session changed it."""

    service: str
    domains: tuple[str, ...]


class BypassReconciler:
    """Merge requested bypass domains into the system list and undo it later."""

    def __init__(self, networksetup: NetworkSetup, resolve_service: Callable[[], str]) -> None:
        self.networksetup = networksetup
        self.resolve_service = resolve_service
        self._snapshot: BypassSnapshot | None = None
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> BypassSnapshot | None:
        return self._snapshot

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def read_domains(self, service: str) -> list[str]:
        output = self.networksetup.query(["-getproxybypassdomains", service])
        if NO_BYPASS_DOMAINS in output:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def write_domains(self, service: str, domains: Sequence[str]) -> None:
        # networksetup clears the list when given the literal "Empty"
        self.networksetup.configure(["-setproxybypassdomains", service, *(domains or ["Empty"])])

    def apply(self, domains: Sequence[str]) -> list[str]:
        """Write the snapshot plus the requested domains as the bypass list.

        Args:
            domains: Domains that should bypass the proxy

        Returns:
            list[str]: The list that was written

        Raises:
            CommandFailedError: If reading or writing the list fails
        """
        with self._lock:
            service = self.resolve_service()
            if self._snapshot is not None and self._snapshot.service != service:
                logger.info(
                    f"Active service changed from {self._snapshot.service} to {service}, "
                    "restoring the previous bypass list first"
                )
                self._restore_locked()

            if self._snapshot is None:
                self._snapshot = BypassSnapshot(service, tuple(self.read_domains(service)))
                logger.debug(f"Captured bypass snapshot for {service}: {list(self._snapshot.domains)}")

            merged = unique([*self._snapshot.domains, *domains])
            self.write_domains(service, merged)
            logger.info(f"Bypass domains for {service}: {len(merged)} entries")
            return merged

    def restore(self) -> bool:
        """Write back the snapshot, if any, and forget it.

        Returns:
            bool: True if a snapshot was restored
        """
        with self._lock:
            return self._restore_locked()

    def _restore_locked(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        self.write_domains(snapshot.service, snapshot.domains)
        # Kept on failure so a later restore can still recover the original
        self._snapshot = None
        logger.info(f"Restored bypass domains for {snapshot.service}")
        return True
