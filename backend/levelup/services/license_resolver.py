"""Resolve the license a checkout is allowed to use.

Resolution is an ordered list of independent strategies over an in-memory
catalog snapshot; the first strategy to return a license wins. Client-supplied
values only ever select an existing catalog row, never define one.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from levelup.core.exceptions import LicenseIncompatible, LicenseNotFound
from levelup.db.models.license import License


class CatalogLicense(Protocol):
    id: UUID
    name: str
    price: int
    exclusive_allowed: bool
    created_at: object


@dataclass(frozen=True)
class LicenseRequest:
    license_id: str | UUID | None = None
    license_name: str | None = None
    legacy_license_type: str | None = None
    is_exclusive_product: bool = False


Strategy = Callable[[LicenseRequest, Sequence[CatalogLicense]], CatalogLicense | None]


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().casefold()
    return value or None


def _match_name(name: str | None, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    wanted = _normalize(name)
    if wanted is None:
        return None
    for candidate in catalog:
        if _normalize(candidate.name) == wanted:
            return candidate
    return None


# ── Strategies ──────────────────────────────────────────────────────


def by_explicit_id(request: LicenseRequest, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    if not request.license_id:
        return None
    wanted = str(request.license_id).strip().lower()
    for candidate in catalog:
        if str(candidate.id).lower() == wanted:
            return candidate
    return None


def by_explicit_name(request: LicenseRequest, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    return _match_name(request.license_name, catalog)


def by_legacy_type(request: LicenseRequest, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    return _match_name(request.legacy_license_type, catalog)


def by_product_default(request: LicenseRequest, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    """Highest-priced exclusive-capable row for exclusives, "standard" otherwise."""
    if request.is_exclusive_product:
        exclusive_capable = [c for c in catalog if c.exclusive_allowed]
        if not exclusive_capable:
            return None
        # Ties on price go to the oldest row
        return sorted(exclusive_capable, key=lambda c: (-c.price, c.created_at))[0]
    return _match_name("standard", catalog)


def by_earliest_created(request: LicenseRequest, catalog: Sequence[CatalogLicense]) -> CatalogLicense | None:
    if not catalog:
        return None
    return min(catalog, key=lambda c: c.created_at)


RESOLUTION_ORDER: tuple[Strategy, ...] = (
    by_explicit_id,
    by_explicit_name,
    by_legacy_type,
    by_product_default,
    by_earliest_created,
)


# ── Public API ──────────────────────────────────────────────────────


def resolve_license(
    request: LicenseRequest,
    catalog: Sequence[CatalogLicense],
    strategies: Sequence[Strategy] = RESOLUTION_ORDER,
) -> CatalogLicense:
    """Return the first license any strategy yields.

    Raises:
        LicenseNotFound: the catalog is empty.
        LicenseIncompatible: the product is exclusive and the winning license
            does not allow exclusive sales.
    """
    resolved = None
    for strategy in strategies:
        resolved = strategy(request, catalog)
        if resolved is not None:
            break

    if resolved is None:
        raise LicenseNotFound("No license configuration available")

    if request.is_exclusive_product and not resolved.exclusive_allowed:
        raise LicenseIncompatible(resolved.name)

    return resolved


async def load_license_catalog(session: AsyncSession) -> list[License]:
    result = await session.execute(select(License).order_by(License.created_at, License.name))
    return list(result.scalars().all())
