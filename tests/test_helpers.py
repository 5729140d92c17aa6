"""Pure helpers: RUT, slugs, template interpolation, tenant host resolution, CNAME matching."""
from datetime import datetime

import pytest

from app.autoexplora.modules.crm import templating
from app.autoexplora.modules.dealers.rut import check_digit, clean_rut, format_rut, validate_rut
from app.autoexplora.modules.microsite.domains import cname_matches
from app.autoexplora.tenancy import should_rewrite, strip_port, tenant_key_for_host
from app.autoexplora.utils import is_valid_cl_phone, slugify, unique_slug

MAIN = ("autoexplora.cl", "www.autoexplora.cl", "localhost", "127.0.0.1")


@pytest.mark.parametrize("rut", ["12.345.678-5", "12345678-5", "123456785", "76.123.456-0"])
def test_valid_ruts(rut):
    assert validate_rut(rut)


@pytest.mark.parametrize("rut", ["12.345.678-4", "", None, "1234", "abcdefgh-k", "1234567890-1"])
def test_invalid_ruts(rut):
    assert not validate_rut(rut)


def test_rut_check_digit_k_and_zero():
    # 11 - (sum % 11) == 10 maps to K, == 11 maps to 0
    assert check_digit("76123456") == "0"
    assert check_digit("10000013") == "K"


def test_format_and_clean_rut():
    assert clean_rut("12.345.678-k") == "12345678K"
    assert format_rut("123456785") == "12.345.678-5"


def test_slugify_strips_accents_and_punctuation():
    assert slugify("Automotora Ñuñoa & Cía.") == "automotora-nunoa-cia"
    assert slugify("  --  ") == ""


def test_unique_slug_appends_counter():
    taken = {"autos-sur", "autos-sur-1"}
    assert unique_slug("autos-sur", taken.__contains__) == "autos-sur-2"
    assert unique_slug("otra", taken.__contains__) == "otra"


@pytest.mark.parametrize("phone", ["+56 9 1234 5678", "+56912345678", "912345678", "56-9-1234-5678"])
def test_chilean_mobile_numbers(phone):
    assert is_valid_cl_phone(phone)


@pytest.mark.parametrize("phone", ["+56 2 2345 6789", "12345", "", None])
def test_rejects_non_mobile_numbers(phone):
    assert not is_valid_cl_phone(phone)


def test_interpolate_known_and_unknown_variables():
    out = templating.interpolate(
        "Hola {nombre}, el {vehiculo} sigue disponible. {desconocida}",
        {"nombre": "Ana", "vehiculo": "Mazda CX-5 2022"},
    )
    assert out == "Hola Ana, el Mazda CX-5 2022 sigue disponible. "


def test_interpolate_date_variables_in_spanish():
    out = templating.interpolate("{fecha} {hora}", {}, now=datetime(2024, 3, 5, 9, 7))
    assert out == "5 de marzo de 2024 09:07"


def test_validate_template_reports_unknown_names():
    assert templating.validate_template("{nombre} {precio} {nombre} {foo}") == ["precio", "foo"]
    assert templating.extract_variables("{a} {b} {a}") == ["a", "b"]


def test_format_clp_uses_dot_thousands():
    assert templating.format_clp(15990000) == "$ 15.990.000"
    assert templating.format_clp(None) == ""


def test_preview_uses_sample_context():
    assert templating.preview("Hola {nombre}") == "Hola Juan Pérez"


@pytest.mark.parametrize(
    "host,expected",
    [
        ("autoexplora.cl", None),
        ("www.autoexplora.cl", None),
        ("localhost:5000", None),
        ("autos-del-sur.autoexplora.cl", "autos-del-sur"),
        ("AUTOS-DEL-SUR.autoexplora.cl:443", "autos-del-sur"),
        ("a.b.autoexplora.cl", None),
        ("www.autosdelsur.cl", "www.autosdelsur.cl"),
        ("", None),
    ],
)
def test_tenant_key_for_host(host, expected):
    assert tenant_key_for_host(host, "autoexplora.cl", MAIN) == expected


def test_strip_port_handles_ipv6():
    assert strip_port("[::1]:8080") == "[::1]"
    assert strip_port("Example.CL:80") == "example.cl"


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/", True),
        ("/vehiculos", True),
        ("/api/vehicles", False),
        ("/static/app.css", False),
        ("/media/x.jpg", False),
        ("/healthz", False),
        ("/microsite/foo", False),
    ],
)
def test_should_rewrite(path, expected):
    assert should_rewrite(path) is expected


def test_cname_matches_exact_or_subdomain():
    assert cname_matches("sites.autoexplora.cl.", "sites.autoexplora.cl")
    assert cname_matches("edge.sites.autoexplora.cl", "sites.autoexplora.cl")
    assert not cname_matches("evil-sites.autoexplora.cl", "sites.autoexplora.cl")
    assert not cname_matches("ghs.googlehosted.com", "sites.autoexplora.cl")
