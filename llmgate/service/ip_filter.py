from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Network, IPv6Network, ip_network
from typing import Iterable, List, Optional, Union

from llmgate.service.errors import ConfigurationError
from llmgate.storage.common import parse_ip_address

Network = Union[IPv4Network, IPv6Network]


@dataclass(frozen=True)
class IpDecision:
    allowed: bool
    code: Optional[str] = None  # IP_BLACKLISTED | IP_NOT_WHITELISTED


def _parse_networks(entries: Iterable[str], setting: str) -> List[Network]:
    networks: List[Network] = []
    for entry in entries:
        try:
            networks.append(ip_network(entry.strip(), strict=False))
        except ValueError as exc:
            raise ConfigurationError(f"invalid {setting} entry: {entry!r}") from exc
    return networks


class IpFilter:
    """Allow/deny lists of addresses or CIDR networks.

    The deny list is consulted first. With the allow list enabled, callers
    whose address cannot be parsed are refused; with only the deny list
    enabled they pass.
    """

    def __init__(
        self,
        *,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
        enable_whitelist: bool = False,
        enable_blacklist: bool = False,
    ) -> None:
        self.enable_whitelist = enable_whitelist
        self.enable_blacklist = enable_blacklist
        self._whitelist = _parse_networks(whitelist, "IP_WHITELIST")
        self._blacklist = _parse_networks(blacklist, "IP_BLACKLIST")

    @property
    def enabled(self) -> bool:
        return self.enable_whitelist or self.enable_blacklist

    @staticmethod
    def _matches(address, networks: List[Network]) -> bool:
        return any(
            address.version == network.version and address in network
            for network in networks
        )

    def check(self, ip: Optional[str]) -> IpDecision:
        if not self.enabled:
            return IpDecision(allowed=True)
        address = parse_ip_address(ip)
        if self.enable_blacklist and address is not None:
            if self._matches(address, self._blacklist):
                return IpDecision(allowed=False, code="IP_BLACKLISTED")
        if self.enable_whitelist:
            if address is None or not self._matches(address, self._whitelist):
                return IpDecision(allowed=False, code="IP_NOT_WHITELISTED")
        return IpDecision(allowed=True)
