"""Idempotent seed data for the license catalog."""

from sqlalchemy import select

from levelup.db.base import get_session_factory
from levelup.db.models.license import License

LICENSES = [
    {
        "name": "Standard",
        "description": "Standard license for non-exclusive releases (streaming and basic distribution).",
        "max_streams": 100_000,
        "max_sales": None,
        "youtube_monetization": True,
        "music_video_allowed": False,
        "credit_required": True,
        "exclusive_allowed": False,
        "price": 2999,
    },
    {
        "name": "Premium",
        "description": "Premium license with extended rights and caps for commercial use.",
        "max_streams": 500_000,
        "max_sales": None,
        "youtube_monetization": True,
        "music_video_allowed": True,
        "credit_required": True,
        "exclusive_allowed": False,
        "price": 5999,
    },
    {
        "name": "Exclusive",
        "description": "Exclusive license transferring exclusive rights on the track.",
        "max_streams": None,
        "max_sales": 1,
        "youtube_monetization": True,
        "music_video_allowed": True,
        "credit_required": True,
        "exclusive_allowed": True,
        "price": 19999,
    },
]


async def seed_licenses() -> None:
    """Insert default licenses if they don't already exist."""
    factory = get_session_factory()

    async with factory() as session:
        for license_data in LICENSES:
            result = await session.execute(
                select(License).where(License.name == license_data["name"])
            )
            existing = result.scalar_one_or_none()

            if existing is None:
                session.add(License(**license_data))

        await session.commit()
