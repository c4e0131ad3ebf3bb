"""
Client address resolution behind a proxy / load balancer.

The consent record and the rate limiter use the address the server's own
proxies observed, never a value supplied in the request body. Entries a
client writes into X-Forwarded-For sit to the left of the ones our proxies
append, so the address is read TRUSTED_PROXY_HOPS entries from the right.
"""
from typing import Optional
from fastapi import Request

from enrollpay.core.config import settings

UNKNOWN = "unknown"


def get_client_ip(request: Optional[Request], trusted_hops: Optional[int] = None) -> str:
    if request is None:
        return UNKNOWN
    if trusted_hops is None:
        trusted_hops = settings.TRUSTED_PROXY_HOPS
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and trusted_hops > 0:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if len(hops) >= trusted_hops:
            return hops[-trusted_hops]
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


def get_user_agent(request: Optional[Request], fallback: Optional[str] = None) -> str:
    if request is not None:
        ua = request.headers.get("user-agent")
        if ua:
            return ua
    return fallback or UNKNOWN
