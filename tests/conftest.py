"""Test fixtures — a throwaway SQLite database per test.

Environment is set before anything from ``crm`` is imported, because
settings, the engine and the app are module-level singletons.

1. Each test gets its own database file under tmp_path with the schema
   created from the models, so committed data never leaks across tests.
2. The app's get_db dependency is overridden to open sessions on that
   database, one per request, like production.
3. The mailer is a recording stub; invitation tokens are read back from
   the accept URL it was asked to send, the way a real invitee gets them.
"""

import os

os.environ.setdefault("CRM_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CRM_JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("CRM_BCRYPT_ROUNDS", "4")
os.environ.setdefault("CRM_ENVIRONMENT", "development")

from typing import Optional  # noqa: E402
from urllib.parse import parse_qs, urlparse  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crm.db.engine import get_db  # noqa: E402
from crm.db.models import Base  # noqa: E402
from crm.main import app  # noqa: E402
from crm.services.email import (  # noqa: E402
    EmailDeliveryError,
    EmailService,
    get_email_service,
)


class RecordingMailer(EmailService):
    """EmailService that keeps invitations in memory instead of sending."""

    def __init__(self):
        super().__init__(mock=True)
        self.invitations: list[dict] = []
        self.fail = False

    async def send_invitation(self, to_email, to_name, organisation_name, inviter_email, accept_url):
        if self.fail:
            raise EmailDeliveryError("Email API error: 503 upstream unavailable")
        self.invitations.append(
            {
                "to_email": to_email,
                "to_name": to_name,
                "organisation_name": organisation_name,
                "inviter_email": inviter_email,
                "accept_url": accept_url,
            }
        )

    def last_token(self) -> str:
        url = self.invitations[-1]["accept_url"]
        return parse_qs(urlparse(url).query)["token"][0]


# ─── GraphQL documents ──────────────────────────────────

AUTH_FIELDS = """
    token
    setupRequired
    nextStep
    user { id email role organisationId teamMember { id } }
"""

REGISTER = (
    "mutation Register($input: RegisterInput!) { register(input: $input) {"
    + AUTH_FIELDS
    + "} }"
)
LOGIN = "mutation Login($input: LoginInput!) { login(input: $input) {" + AUTH_FIELDS + "} }"
JOIN = (
    "mutation Join($input: JoinOrganisationInput!) { joinOrganisation(input: $input) {"
    + AUTH_FIELDS
    + "} }"
)
CREATE_ORGANISATION = """
mutation CreateOrganisation($input: CreateOrganisationInput!) {
    createOrganisation(input: $input) { token organisation { id organisationName } }
}
"""
INVITE = """
mutation Invite($input: InviteTeamMemberInput!) {
    inviteTeamMember(input: $input) {
        emailSent
        warning
        teamMember { id teamMemberName teamMemberEmailId userId joined }
        invitation { id email status expiresAt acceptedAt }
    }
}
"""
VERIFY = """
query Verify($token: String!) {
    verifyInvitationToken(token: $token) { name email organizationName role }
}
"""
ME = "query Me { me { id email role organisationId organisation { id organisationName } teamMember { id } } }"


class GraphQLApi:
    """Thin helper over the HTTP client for the common operations."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def execute(
        self,
        query: str,
        variables: Optional[dict] = None,
        token: Optional[str] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        return await self.client.post(
            "/graphql",
            json={"query": query, "variables": variables or {}},
            headers=headers,
        )

    async def data(self, query, variables=None, token=None) -> dict:
        r = await self.execute(query, variables, token)
        assert r.status_code == 200, r.text
        body = r.json()
        assert not body.get("errors"), body["errors"]
        return body["data"]

    async def error_code(self, query, variables=None, token=None) -> str:
        r = await self.execute(query, variables, token)
        assert r.status_code == 200, r.text
        return r.json()["errors"][0]["extensions"]["code"]

    async def register(self, email: str, password: str, role: Optional[str] = None) -> dict:
        data = await self.data(
            REGISTER, {"input": {"email": email, "password": password, "role": role}}
        )
        return data["register"]

    async def login(self, email: str, password: str) -> dict:
        data = await self.data(LOGIN, {"input": {"email": email, "password": password}})
        return data["login"]

    async def create_organisation(self, token: str, name: str) -> dict:
        data = await self.data(
            CREATE_ORGANISATION, {"input": {"organisationName": name}}, token=token
        )
        return data["createOrganisation"]

    async def invite(self, token: str, name: str, email: str, role: Optional[str] = None) -> dict:
        data = await self.data(
            INVITE, {"input": {"name": name, "email": email, "role": role}}, token=token
        )
        return data["inviteTeamMember"]

    async def verify(self, invitation_token: str) -> dict:
        data = await self.data(VERIFY, {"token": invitation_token})
        return data["verifyInvitationToken"]

    async def join(self, invitation_token: str, password: str) -> dict:
        data = await self.data(
            JOIN, {"input": {"token": invitation_token, "password": password}}
        )
        return data["joinOrganisation"]

    async def me(self, token: str) -> dict:
        return (await self.data(ME, token=token))["me"]


# ─── Fixtures ───────────────────────────────────────────


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Fresh database file with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture()
async def client(session_factory, mailer):
    """HTTP client against the real middleware stack and GraphQL router.

    The lifespan doesn't run under ASGITransport, so Redis is never
    connected: rate limiting is skipped and revocation is a no-op unless
    a test installs a fake.
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: mailer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def api(client):
    return GraphQLApi(client)


@pytest_asyncio.fixture()
async def owner(api):
    """A registered user who has created organisation "Acme"."""
    registered = await api.register("owner@acme.com", "owner-pw")
    created = await api.create_organisation(registered["token"], "Acme")
    return {
        "email": "owner@acme.com",
        "password": "owner-pw",
        "token": created["token"],
        "organisation_id": created["organisation"]["id"],
    }


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the revocation store."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = value
        return value

    async def expire(self, key, seconds):
        self.ttls[key] = seconds


@pytest.fixture
def fake_redis(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr("crm.auth.revocation.get_redis", lambda: redis)
    return redis
