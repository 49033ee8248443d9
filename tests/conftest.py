import pytest
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from shared_lib.encryption import TokenVault
from server.monitor.models import Base, User, Channel, ChannelStatus, Video

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4


@pytest.fixture
async def db_engine():
    """
    In-memory SQLite engine shared by every session in a test.

    StaticPool keeps a single connection so sessions opened by the code
    under test see the same database as the fixtures.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    """Session used by tests to arrange data."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def vault():
    return TokenVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
async def user(db_session):
    user = User(email="creator@example.com", display_label="Creator")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def channel(db_session, user, vault):
    channel = Channel(
        user_id=user.id,
        youtube_channel_id="UC_test_channel",
        title="Test Channel",
        status=ChannelStatus.ACTIVE,
        access_token=vault.encrypt("access-token"),
        refresh_token=vault.encrypt("refresh-token"),
        token_expires_at=datetime.utcnow() + timedelta(hours=1),
    )
    db_session.add(channel)
    await db_session.commit()
    return channel


@pytest.fixture
async def video(db_session, channel):
    video = Video(
        channel_id=channel.id,
        youtube_video_id="vid_001",
        title="My Video",
        privacy_status="public",
        upload_status="processed",
        blocked_regions=[],
        allowed_regions=[],
    )
    db_session.add(video)
    await db_session.commit()
    return video
