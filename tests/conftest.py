from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.autoexplora import create_app
from app.autoexplora.db import session_scope
from app.autoexplora.models import Base, Permission, Role, User
from app.autoexplora.rbac import PERMISSIONS, ROLE_NAMES, ROLE_PERMISSIONS

PASSWORD = "Secreta123"
CSRF = "test-csrf-token"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ROOT_DOMAIN", "autoexplora.cl")
    monkeypatch.setenv("CNAME_TARGET", "sites.autoexplora.cl")
    for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "SMTP_HOST", "CRON_SECRET", "MAIN_DOMAINS", "SITE_URL"):
        monkeypatch.delenv(k, raising=False)

    from app.autoexplora import auth

    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in PERMISSIONS}
        s.add_all(perms.values())
        for role_key, keys in ROLE_PERMISSIONS.items():
            role = Role(key=role_key, name=ROLE_NAMES[role_key])
            role.permissions.extend(perms[k] for k in keys)
            s.add(role)
        s.add(User(email="admin@example.com", name="Admin", password_hash=generate_password_hash(PASSWORD), is_active=True))
        s.flush()
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        admin.roles.append(s.query(Role).filter(Role.key == "admin").one())
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    with c.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    c.environ_base["HTTP_X_CSRF_TOKEN"] = CSRF
    return c


def login(client, email: str = "admin@example.com", password: str = PASSWORD):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return r


def make_user(s, email: str, *, dealer=None, dealer_role: str | None = None, roles: tuple[str, ...] = ()) -> User:
    u = User(
        email=email,
        name=email.split("@")[0].title(),
        password_hash=generate_password_hash(PASSWORD),
        is_active=True,
        dealer_id=dealer.id if dealer else None,
        dealer_role=dealer_role,
    )
    for key in roles:
        u.roles.append(s.query(Role).filter(Role.key == key).one())
    s.add(u)
    s.flush()
    return u


def make_catalog(s) -> dict:
    from app.autoexplora.modules.catalog.models import Brand, Comuna, Region, VehicleModel

    region = Region(name="Metropolitana de Santiago", slug="metropolitana", order=7)
    s.add(region)
    s.flush()
    comuna = Comuna(region_id=region.id, name="Providencia", slug="providencia")
    toyota = Brand(name="Toyota", slug="toyota", vehicle_types=["AUTO"])
    mazda = Brand(name="Mazda", slug="mazda", vehicle_types=["AUTO"])
    s.add_all([comuna, toyota, mazda])
    s.flush()
    corolla = VehicleModel(brand_id=toyota.id, name="Corolla", slug="corolla")
    rav4 = VehicleModel(brand_id=toyota.id, name="RAV4", slug="rav4")
    cx5 = VehicleModel(brand_id=mazda.id, name="CX-5", slug="cx-5")
    s.add_all([corolla, rav4, cx5])
    s.flush()
    return {
        "region": region,
        "comuna": comuna,
        "toyota": toyota,
        "mazda": mazda,
        "corolla": corolla,
        "rav4": rav4,
        "cx5": cx5,
    }


def make_dealer(s, region, *, slug: str = "autos-del-sur", status: str = "ACTIVE", rut: str = "761234560"):
    from app.autoexplora.modules.dealers.models import Dealer

    d = Dealer(
        slug=slug,
        business_name="Autos del Sur SpA",
        trade_name="Autos del Sur",
        rut=rut,
        type="AUTOMOTORA",
        email=f"contacto@{slug}.cl",
        phone="+56 2 2345 6789",
        address="Av. Providencia 1234",
        region_id=region.id,
        status=status,
        verified_at=datetime.utcnow() if status == "ACTIVE" else None,
    )
    s.add(d)
    s.flush()
    return d


def make_vehicle(s, user, brand, model, region, *, dealer=None, price: int = 12_990_000, year: int = 2020, status: str = "ACTIVE", title: str | None = None):
    from app.autoexplora.modules.vehicles.models import Vehicle, VehicleImage

    now = datetime.utcnow()
    v = Vehicle(
        user_id=user.id,
        dealer_id=dealer.id if dealer else None,
        title=title or f"{brand.name} {model.name} {year} impecable",
        slug=f"tmp-{brand.slug}-{model.slug}-{year}-{price}-{now.timestamp()}",
        price=Decimal(price),
        vehicle_type="AUTO",
        category="SEDAN",
        condition="USADO",
        brand_id=brand.id,
        model_id=model.id,
        year=year,
        mileage=45_000,
        region_id=region.id,
        contact_phone="+56 9 1234 5678",
        status=status,
        published_at=now if status == "ACTIVE" else None,
        expires_at=now + timedelta(days=30) if status == "ACTIVE" else None,
    )
    for i in range(3):
        v.images.append(VehicleImage(url=f"/media/vehicles/{i}.jpg", is_primary=i == 0, order=i))
    s.add(v)
    s.flush()
    v.slug = f"{year}-{brand.slug}-{model.slug}-{v.id}"
    s.flush()
    return v


@pytest.fixture()
def world(app):
    """Catalog, an ACTIVE dealer with OWNER/MANAGER/SALES members, a private buyer and two listings."""
    with session_scope(app) as s:
        cat = make_catalog(s)
        dealer = make_dealer(s, cat["region"])
        owner = make_user(s, "owner@autosdelsur.cl", dealer=dealer, dealer_role="OWNER")
        manager = make_user(s, "manager@autosdelsur.cl", dealer=dealer, dealer_role="MANAGER")
        sales = make_user(s, "sales@autosdelsur.cl", dealer=dealer, dealer_role="SALES")
        buyer = make_user(s, "buyer@example.com")
        corolla = make_vehicle(s, owner, cat["toyota"], cat["corolla"], cat["region"], dealer=dealer, price=12_990_000, year=2020)
        cx5 = make_vehicle(s, owner, cat["mazda"], cat["cx5"], cat["region"], dealer=dealer, price=21_500_000, year=2022)
        ids = {
            "region_id": cat["region"].id,
            "comuna_id": cat["comuna"].id,
            "toyota_id": cat["toyota"].id,
            "mazda_id": cat["mazda"].id,
            "corolla_model_id": cat["corolla"].id,
            "rav4_model_id": cat["rav4"].id,
            "cx5_model_id": cat["cx5"].id,
            "dealer_id": dealer.id,
            "dealer_slug": dealer.slug,
            "owner_id": owner.id,
            "manager_id": manager.id,
            "sales_id": sales.id,
            "buyer_id": buyer.id,
            "corolla_id": corolla.id,
            "corolla_slug": corolla.slug,
            "cx5_id": cx5.id,
        }
    return ids
