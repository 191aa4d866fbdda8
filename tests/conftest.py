import os

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# One RSA key for the whole run; env must be in place before fotofacil is imported.
RSA_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PRIVATE_PEM = RSA_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode()

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GCS_PROJECT_ID"] = "test-project"
os.environ["GCS_CLIENT_EMAIL"] = "uploader@test-project.iam.gserviceaccount.com"
os.environ["GCS_PRIVATE_KEY"] = PRIVATE_PEM.replace("\n", "\\n")
os.environ["GCS_BUCKET_NAME"] = "test-bucket"
os.environ["MP_ACCESS_TOKEN"] = "TEST-mp-token"
os.environ["PUBLIC_SITE_URL"] = "https://fotos.example.com"
os.environ["WEBHOOK_URL"] = "https://api.example.com/webhooks/mercadopago"
os.environ["UPLOAD_BATCH_DELAY_SECONDS"] = "0"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from fotofacil.config import get_settings  # noqa: E402
from fotofacil.db import Base, SessionLocal, engine  # noqa: E402
from fotofacil.deps import get_http_client, get_redis  # noqa: E402
from fotofacil.main import app  # noqa: E402
from fotofacil.storage import GCSStorage  # noqa: E402
from tests.helpers import FakeCloud, FakeRedis  # noqa: E402


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def account(settings):
    return settings.service_account()


@pytest.fixture
def public_key():
    return RSA_KEY.public_key()


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cloud():
    return FakeCloud(bucket="test-bucket")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def http(cloud):
    async with httpx.AsyncClient(transport=cloud.transport) as c:
        yield c


@pytest.fixture
def storage(settings, http):
    return GCSStorage(settings.service_account(), settings.gcs_bucket_name, http)


@pytest_asyncio.fixture(scope="function")
async def client(cloud, fake_redis):
    async def _http_client():
        async with httpx.AsyncClient(transport=cloud.transport) as c:
            yield c

    app.dependency_overrides[get_http_client] = _http_client
    app.dependency_overrides[get_redis] = lambda: fake_redis

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
        yield c
