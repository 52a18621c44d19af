"""
Estimate API Routes

POST /api/estimates                     — create an estimate from a save payload
GET  /api/estimates/{id}                — estimate payload plus section subtotals
PUT  /api/estimates/{id}                — save payload (items matched by id)
POST /api/estimates/{id}/coefficient    — reprice works at baseline × (1 + percent/100)
POST /api/estimates/{id}/reset-prices   — restore baseline work prices
POST /api/estimates/{id}/works          — insert catalog works with their material norms
POST /api/estimates/{id}/items/{item_id}/reference-price
                                        — write a line's current price into its catalog work
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from smeta.api.deps import CurrentUser, get_catalog_cache, get_current_user, get_scoped_db, get_tenant_id
from smeta.errors import CatalogWorkNotFoundError
from smeta.models.schemas import CoefficientRequest, EstimateSavePayload, InsertWorksRequest
from smeta.services.cache_store import CacheStore
from smeta.services.catalog import SqlCatalog
from smeta.services.estimate_payload import build_save_payload, metadata_from_payload, tree_from_rows
from smeta.services.estimate_repository import EstimateRepository, LoadedEstimate
from smeta.services.estimate_session import EstimateSession
from smeta.services.line_item_tree import EstimateTree

router = APIRouter(prefix="/api/estimates", tags=["Estimates"])
logger = logging.getLogger("smeta-estimate-routes")


def _estimate_view(estimate_id: str, tree: EstimateTree, metadata: Dict[str, Any], coefficient: float) -> dict:
    return {
        "id": estimate_id,
        "estimate": build_save_payload(tree, metadata),
        "sections": [
            {
                "title": section.title,
                "code": section.code,
                "item_ids": [item.id for item in section.items],
                "works_total": section.works_total,
                "materials_total": section.materials_total,
                "subtotal": section.subtotal,
            }
            for section in tree.sections
        ],
        "totals": {
            "works": tree.works_total,
            "materials": tree.materials_total,
            "total": tree.total,
        },
        "current_coefficient": coefficient,
    }


async def _persist(repo: EstimateRepository, loaded: LoadedEstimate, session: EstimateSession) -> dict:
    await repo.save(
        build_save_payload(session.tree, loaded.metadata),
        store=session.store,
        current_coefficient=session.current_percent,
        estimate_id=loaded.id,
    )
    return _estimate_view(loaded.id, session.tree, loaded.metadata, session.current_percent)


@router.post("", status_code=201)
async def create_estimate(
    req: EstimateSavePayload,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    body = req.model_dump()
    tree = tree_from_rows(body["items"])
    session = EstimateSession(tree)
    metadata = metadata_from_payload(body)
    estimate_id = await EstimateRepository(db, tenant_id).save(
        build_save_payload(tree, metadata), store=session.store, current_coefficient=0
    )
    return _estimate_view(estimate_id, tree, metadata, 0.0)


@router.get("/{estimate_id}")
async def get_estimate(
    estimate_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    loaded = await EstimateRepository(db, tenant_id).load(estimate_id)
    return _estimate_view(loaded.id, loaded.tree, loaded.metadata, loaded.current_coefficient)


@router.put("/{estimate_id}")
async def save_estimate(
    estimate_id: str,
    req: EstimateSavePayload,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    repo = EstimateRepository(db, tenant_id)
    loaded = await repo.load(estimate_id)
    body = req.model_dump()
    tree = tree_from_rows(body["items"])
    # Newly added lines get their baseline on first save
    session = EstimateSession(tree, loaded.store, loaded.current_coefficient)
    loaded.metadata = metadata_from_payload(body)
    return await _persist(repo, loaded, session)


@router.post("/{estimate_id}/coefficient")
async def apply_coefficient(
    estimate_id: str,
    req: CoefficientRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    repo = EstimateRepository(db, tenant_id)
    loaded = await repo.load(estimate_id)
    session = EstimateSession(loaded.tree, loaded.store, loaded.current_coefficient)
    session.apply_coefficient(req.percent)
    logger.info("Coefficient %+.2f%% applied", req.percent, extra={"estimate_id": estimate_id})
    return await _persist(repo, loaded, session)


@router.post("/{estimate_id}/reset-prices")
async def reset_prices(
    estimate_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    repo = EstimateRepository(db, tenant_id)
    loaded = await repo.load(estimate_id)
    session = EstimateSession(loaded.tree, loaded.store, loaded.current_coefficient)
    session.reset_prices()
    return await _persist(repo, loaded, session)


@router.post("/{estimate_id}/works")
async def insert_works(
    estimate_id: str,
    req: InsertWorksRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    cache: CacheStore = Depends(get_catalog_cache),
    user: CurrentUser = Depends(get_current_user),
):
    repo = EstimateRepository(db, tenant_id)
    loaded = await repo.load(estimate_id)
    session = EstimateSession(loaded.tree, loaded.store, loaded.current_coefficient)
    catalog = SqlCatalog(db, tenant_id, cache)
    for work_id in req.work_ids:
        work = await catalog.get_work(work_id)
        if work is None:
            raise CatalogWorkNotFoundError(work_id)
        session.insert_work(work, await catalog.materials_for_work(work_id))
    return await _persist(repo, loaded, session)


@router.post("/{estimate_id}/items/{item_id}/reference-price")
async def update_reference_price(
    estimate_id: str,
    item_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    cache: CacheStore = Depends(get_catalog_cache),
    user: CurrentUser = Depends(get_current_user),
):
    """The line's current price becomes its work's catalog base price and its reset baseline."""
    repo = EstimateRepository(db, tenant_id)
    loaded = await repo.load(estimate_id)
    position = loaded.tree.locate(item_id)
    if position is None:
        raise HTTPException(status_code=404, detail=f"Позиция {item_id} не найдена в смете")
    si, ii = position
    item = loaded.tree.sections[si].items[ii]
    if not item.work_id:
        raise HTTPException(status_code=400, detail="Позиция не связана с работой из справочника")

    work = await SqlCatalog(db, tenant_id, cache).update_work_price(item.work_id, item.price)
    session = EstimateSession(loaded.tree, loaded.store, loaded.current_coefficient)
    session.adopt_reference_price(work.id, item.price)
    view = await _persist(repo, loaded, session)
    view["work"] = {"id": work.id, "base_price": work.base_price}
    return view
