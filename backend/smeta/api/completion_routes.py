"""
Work Completion API Routes

GET    /api/estimates/{id}/completions            — completion records with their last act
PUT    /api/estimates/{id}/completions            — batch upsert of completion records
DELETE /api/estimates/{id}/completions/{item_id}  — drop one record
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from smeta.api.deps import CurrentUser, get_current_user, get_scoped_db, get_tenant_id
from smeta.models.schemas import CompletionBatchRequest
from smeta.services.act_ledger import ActLedger
from smeta.services.estimate_repository import EstimateRepository

router = APIRouter(prefix="/api/estimates", tags=["Work Completions"])
logger = logging.getLogger("smeta-completion-routes")


@router.get("/{estimate_id}/completions")
async def list_completions(
    estimate_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    return {"completions": await ActLedger(db, tenant_id, user.id).list_completions(estimate_id)}


@router.put("/{estimate_id}/completions")
async def batch_upsert_completions(
    estimate_id: str,
    req: CompletionBatchRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    loaded = await EstimateRepository(db, tenant_id).load(estimate_id)
    known = set(loaded.item_ids)
    unknown = [c.estimate_item_id for c in req.completions if c.estimate_item_id not in known]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Позиции не принадлежат смете: {', '.join(unknown)}")

    ledger = ActLedger(db, tenant_id, user.id)
    await ledger.batch_upsert_completions(estimate_id, [c.model_dump() for c in req.completions])
    return {"completions": await ledger.list_completions(estimate_id)}


@router.delete("/{estimate_id}/completions/{estimate_item_id}")
async def delete_completion(
    estimate_id: str,
    estimate_item_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    deleted = await ActLedger(db, tenant_id, user.id).delete_completion(estimate_id, estimate_item_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Запись о выполнении не найдена")
    return {"deleted": True}
