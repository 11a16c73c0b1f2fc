import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from database import Base, get_db
from models.billing_profile import BillingProfile
from models.user import User
from routers import rate_limit
from services import credits
from services.billing_gateway import BillingGateway, CheckoutSession
from services.notifications import Notifier
from services.session_token import create_session_token
from services.storage import ObjectStore

WEBHOOK_SECRET = "whsec_test_secret"
PUBLIC_BASE_URL = "https://storage.test/storage/v1/object/public"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client calls the store makes."""

    def __init__(self):
        self.objects: Dict[tuple, bytes] = {}
        self.buckets = set()
        self.fail_puts = False
        self.deleted: List[tuple] = []

    def put_object(self, Bucket, Key, Body, ContentType, CacheControl=None):
        if self.fail_puts:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject")
        self.objects[(Bucket, Key)] = Body

    def delete_object(self, Bucket, Key):
        self.deleted.append((Bucket, Key))
        self.objects.pop((Bucket, Key), None)

    def head_bucket(self, Bucket):
        if Bucket not in self.buckets:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

    def create_bucket(self, Bucket):
        self.buckets.add(Bucket)

    def put_bucket_policy(self, Bucket, Policy):
        return None

    def keys(self, bucket: str) -> List[str]:
        return [key for (name, key) in self.objects if name == bucket]


class FakeInference:
    """Replaces the Replicate client; records calls and fails on demand."""

    def __init__(self):
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.output_url = "https://replicate.delivery/pbxt/result.jpg"

    async def submit(self, prompt, model_id, *, image=None, fallback_image_url=None):
        self.calls.append(
            {
                "prompt": prompt,
                "model_id": model_id,
                "image": image,
                "fallback_image_url": fallback_image_url,
            }
        )
        if self.error is not None:
            raise self.error
        return self.output_url

    async def fetch_output(self, url):
        return b"generated-image", "image/jpeg"

    async def aclose(self):
        return None


class FakeBillingGateway(BillingGateway):
    """Real webhook verification, canned Stripe API responses."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET, currency="eur")
        self.sessions: Dict[str, CheckoutSession] = {}
        self.checkout_error: Optional[Exception] = None
        self.customers_created = 0

    async def create_customer(self, email, user_id):
        self.customers_created += 1
        return f"cus_{user_id}"

    async def create_checkout_session(
        self, *, customer_id, amount_cents, product_name, success_url, cancel_url, metadata
    ):
        if self.checkout_error is not None:
            raise self.checkout_error
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            customer_id=customer_id,
            payment_status="unpaid",
            status="open",
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        return session

    async def retrieve_session(self, session_id):
        return self.sessions[session_id]


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__("", "")
        self.sent: List[Dict[str, Any]] = []

    async def send_email(self, to, subject, text=None, html=None):
        self.sent.append({"to": to, "subject": subject, "html": html})
        return True


@dataclass
class Harness:
    client: AsyncClient
    session_maker: Any
    s3: FakeS3Client
    store: ObjectStore
    inference: FakeInference
    gateway: FakeBillingGateway
    notifier: RecordingNotifier
    headers: Dict[str, Dict[str, str]] = field(default_factory=dict)


def auth_headers(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
    token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe does."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed_event(session_id: str, metadata: Dict[str, str], customer: str = "cus_x") -> bytes:
    return json.dumps(
        {
            "id": f"evt_{session_id}",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "customer": customer,
                    "payment_intent": f"pi_{session_id}",
                    "metadata": metadata,
                }
            },
        }
    ).encode("utf-8")


async def seed_user(session_maker, user_id: str, *, balance: int = 0, customer_id: Optional[str] = None):
    async with session_maker() as db:
        db.add(User(id=user_id, email=f"{user_id}@example.com"))
        if customer_id:
            db.add(BillingProfile(user_id=user_id, stripe_customer_id=customer_id))
        await db.commit()
        if balance:
            await credits.adjust(user_id, balance, db, entry_type="grant", reason="test seed")


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "studio.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def studio(session_maker):
    s3 = FakeS3Client()
    store = ObjectStore(s3, PUBLIC_BASE_URL, max_object_bytes=1024 * 1024)
    inference = FakeInference()
    gateway = FakeBillingGateway()
    notifier = RecordingNotifier()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    handles = {
        "object_store": store,
        "inference_client": inference,
        "billing_gateway": gateway,
        "notifier": notifier,
    }
    previous = {name: getattr(app.state, name, None) for name in handles}
    for name, handle in handles.items():
        setattr(app.state, name, handle)
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield Harness(
            client=client,
            session_maker=session_maker,
            s3=s3,
            store=store,
            inference=inference,
            gateway=gateway,
            notifier=notifier,
        )

    app.dependency_overrides.pop(get_db, None)
    for name, handle in previous.items():
        setattr(app.state, name, handle)
