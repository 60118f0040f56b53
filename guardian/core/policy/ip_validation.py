import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional

from guardian.logging_utils import get_logger

logger = get_logger("ip_validation")

NETWORK_POLICIES = ("both", "lan", "wan")
IP_ACCESS_POLICIES = ("all", "restricted")

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
)

DEFAULT_MESSAGES = {
    "lan_only": "Only LAN access is allowed",
    "wan_only": "Only WAN access is allowed",
    "not_allowed": "Your current IP address is not in the allowed list",
}


@dataclass
class IPValidationResult:
    allowed: bool
    reason: Optional[str] = None
    stop_code: Optional[str] = None


def is_valid_ipv4(ip) -> bool:
    if not ip or not isinstance(ip, str):
        return False
    try:
        ipaddress.IPv4Address(ip.strip())
        return True
    except ValueError:
        return False


def is_valid_cidr(cidr) -> bool:
    if not cidr or not isinstance(cidr, str) or "/" not in cidr:
        return False
    try:
        ipaddress.IPv4Network(cidr.strip(), strict=False)
        return True
    except ValueError:
        return False


def is_private_ip(ip: str) -> bool:
    if not is_valid_ipv4(ip):
        return False
    addr = ipaddress.IPv4Address(ip.strip())
    return any(addr in net for net in PRIVATE_NETWORKS)


def get_network_type(ip: str) -> str:
    if not is_valid_ipv4(ip):
        return "unknown"
    return "lan" if is_private_ip(ip) else "wan"


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    if not is_valid_ipv4(ip) or not is_valid_cidr(cidr):
        return False
    return ipaddress.IPv4Address(ip.strip()) in ipaddress.IPv4Network(cidr.strip(), strict=False)


def is_ip_in_allowed_list(ip: str, allowed: Optional[Iterable[str]]) -> bool:
    """An empty allow-list allows everything."""
    allowed = [a.strip() for a in (allowed or []) if a and str(a).strip()]
    if not allowed:
        return True
    if not is_valid_ipv4(ip):
        return False

    ip = ip.strip()
    for entry in allowed:
        if "/" in entry:
            if is_ip_in_cidr(ip, entry):
                return True
        elif entry == ip:
            return True
    return False


def validate_allowed_entry(entry: str) -> bool:
    return is_valid_ipv4(entry) or is_valid_cidr(entry)


def validate_ip_access(ip: str, policy: dict, messages: Optional[dict] = None) -> IPValidationResult:
    """
    policy keys: network_policy (both|lan|wan), ip_access_policy (all|restricted),
    allowed_ips (list of IPv4 / CIDR).
    """
    msgs = dict(DEFAULT_MESSAGES)
    msgs.update({k: v for k, v in (messages or {}).items() if v})

    if not is_valid_ipv4(ip):
        return IPValidationResult(False, "Invalid or missing client IP address")

    network_policy = policy.get("network_policy") or "both"
    network_type = get_network_type(ip)

    if network_policy == "lan" and network_type != "lan":
        return IPValidationResult(False, msgs["lan_only"], "IP_POLICY_LAN_ONLY")

    if network_policy == "wan" and network_type != "wan":
        return IPValidationResult(False, msgs["wan_only"], "IP_POLICY_WAN_ONLY")

    if (policy.get("ip_access_policy") or "all") == "restricted":
        if not is_ip_in_allowed_list(ip, policy.get("allowed_ips")):
            return IPValidationResult(False, msgs["not_allowed"], "IP_POLICY_NOT_ALLOWED")

    return IPValidationResult(True)
