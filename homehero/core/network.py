import hashlib
import ipaddress

from starlette.requests import Request


def normalize_client_address(raw_address: str | None, *, ipv6_prefix: int = 56) -> str:
    """Canonical form of a client address used as a rate-limit identity.

    IPv4-mapped IPv6 addresses collapse to their IPv4 form and other IPv6
    addresses collapse to their network prefix, so one client cannot rotate
    through textual variants or addresses inside its own allocation.
    """
    candidate = (raw_address or "").strip()
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    candidate = candidate.split("%", maxsplit=1)[0]

    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        if not candidate:
            return "unknown"
        return "h:" + hashlib.sha256(candidate.lower().encode("utf-8")).hexdigest()[:32]

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return str(address.ipv4_mapped)
        prefix = max(0, min(128, ipv6_prefix))
        network = ipaddress.IPv6Network((address, prefix), strict=False)
        return network.compressed

    return str(address)


def client_address_for(request: Request, *, trust_forwarded_for: bool = False) -> str | None:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",", maxsplit=1)[0].strip()
            if first_hop:
                return first_hop
    if request.client is None:
        return None
    return request.client.host
