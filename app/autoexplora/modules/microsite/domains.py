"""
CNAME verification for dealer custom domains (dnspython).

A domain is verified when one of its CNAME records equals the expected target
or is a subdomain of it. A single lookup is made; there are no retries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class CnameCheck:
    verified: bool
    records: tuple[str, ...] = ()
    error: str | None = None


def resolve_cname(domain: str) -> list[str]:
    """CNAME targets of `domain`, lowercased and without the trailing dot."""
    answer = dns.resolver.resolve(domain, "CNAME", lifetime=LOOKUP_TIMEOUT_SECONDS)
    return [rdata.target.to_text().rstrip(".").lower() for rdata in answer]


def cname_matches(record: str, target: str) -> bool:
    record = record.rstrip(".").lower()
    target = target.rstrip(".").lower()
    return record == target or record.endswith(f".{target}")


def check_cname(domain: str, target: str) -> CnameCheck:
    try:
        records = resolve_cname(domain)
    except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
        return CnameCheck(False, error="No se encontró registro CNAME para este dominio")
    except dns.exception.DNSException as e:
        logger.warning("CNAME lookup failed for %s: %s", domain, e)
        return CnameCheck(False, error=f"Error DNS: {e}")

    if any(cname_matches(r, target) for r in records):
        return CnameCheck(True, records=tuple(records))
    return CnameCheck(
        False,
        records=tuple(records),
        error=f"CNAME apunta a: {', '.join(records)}. Debe apuntar a {target}",
    )
