from typing import List, Optional

from fastapi import Request

from models import ProxyOptions

FORWARDED_FOR_HEADER = "x-forwarded-for"


def peer_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def forwarded_chain(request: Request) -> List[str]:
    """Addresses from X-Forwarded-For, leftmost (original client) first"""
    chain = []
    for header in request.headers.getlist(FORWARDED_FOR_HEADER):
        chain.extend(part.strip() for part in header.split(",") if part.strip())
    return chain


def _is_trusted(address: str, proxy_list: List[str]) -> bool:
    return any(address.startswith(prefix) for prefix in proxy_list)


def resolve_client_ip(request: Request, proxy: Optional[ProxyOptions] = None) -> Optional[str]:
    """
    Resolve the apparent client address of a request.

    Without proxy settings the direct peer address is returned and forwarding
    headers are ignored. With ``proxy_count`` set, the n-th address from the
    right of X-Forwarded-For is taken (the nearest proxy is the peer). With
    ``proxy_list`` set, the chain (peer last) is walked from the right,
    skipping addresses that start with a trusted prefix. Whenever the chain
    cannot be resolved, the peer address is returned.
    """
    peer = peer_address(request)
    if proxy is None or not proxy.configured:
        return peer

    chain = forwarded_chain(request)
    if not chain:
        return peer

    if proxy.proxy_list:
        if peer is None or not _is_trusted(peer, proxy.proxy_list):
            return peer
        for address in reversed(chain):
            if not _is_trusted(address, proxy.proxy_list):
                return address
        return peer

    if len(chain) >= proxy.proxy_count:
        return chain[-proxy.proxy_count]
    return peer
