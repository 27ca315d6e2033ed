import pytest

from storefront.common import ServiceSettings, normalize_database_url, resolve_database_url


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("postgres://ship:pw@db:5432/shop", "postgresql+asyncpg://ship:pw@db:5432/shop"),
        ("postgresql://ship:pw@db/shop", "postgresql+asyncpg://ship:pw@db/shop"),
        ("sqlite:///./local.db", "sqlite+aiosqlite:///./local.db"),
        ("postgresql+asyncpg://db/shop", "postgresql+asyncpg://db/shop"),
        ("not a url", "not a url"),
    ],
)
def test_sync_schemes_are_mapped_to_async_drivers(raw: str, expected: str) -> None:
    assert normalize_database_url(raw) == expected


def test_resolve_prefers_configured_url() -> None:
    configured = ServiceSettings(database_url="postgres://db/shop")
    assert resolve_database_url(configured, "sqlite:///fallback.db") == "postgresql+asyncpg://db/shop"
    assert resolve_database_url(ServiceSettings(database_url=None), "sqlite:///fallback.db") == (
        "sqlite+aiosqlite:///fallback.db"
    )
