"""
Chilean RUT (Rol Único Tributario) helpers.

A RUT is written XX.XXX.XXX-Y where Y is a mod-11 check digit (0-9 or K).
"""
from __future__ import annotations

import re

_NON_RUT = re.compile(r"[^0-9kK]")


def clean_rut(rut: str) -> str:
    return _NON_RUT.sub("", rut or "").upper()


def check_digit(body: str) -> str:
    total = 0
    multiplier = 2
    for digit in reversed(body):
        total += int(digit) * multiplier
        multiplier = 2 if multiplier == 7 else multiplier + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def validate_rut(rut: str | None) -> bool:
    if not rut:
        return False
    cleaned = clean_rut(rut)
    # 7 or 8 body digits plus the check digit
    if len(cleaned) < 8 or len(cleaned) > 9:
        return False
    body, dv = cleaned[:-1], cleaned[-1]
    if not body.isdigit():
        return False
    return check_digit(body) == dv


def format_rut(rut: str) -> str:
    """'123456785' -> '12.345.678-5'."""
    cleaned = clean_rut(rut)
    if len(cleaned) < 2:
        return cleaned
    body, dv = cleaned[:-1], cleaned[-1]
    grouped = f"{int(body):,}".replace(",", ".") if body.isdigit() else body
    return f"{grouped}-{dv}"
