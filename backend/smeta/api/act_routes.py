"""
Completion Act API Routes

POST   /api/acts/generate               — generate client / specialist / both acts
GET    /api/acts/estimate/{id}          — acts of an estimate (optional ?act_type=)
GET    /api/acts/{id}                   — act with items, signatories and section groups
DELETE /api/acts/{id}                   — delete an act (?release_records=true also frees its records)
PATCH  /api/acts/{id}/status            — change status
PATCH  /api/acts/{id}/details           — contractor / customer / contract / object fields
POST   /api/acts/{id}/signatories       — replace signatories
POST   /api/acts/{id}/release           — make the act's records eligible again
GET    /api/acts/{id}/ks2               — KS-2 form data
GET    /api/acts/{id}/ks3               — KS-3 form data with accumulation
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from smeta.api.deps import (
    CurrentUser,
    get_current_user,
    get_scoped_db,
    get_tenant_id,
    get_transaction_factory,
)
from smeta.config import ACT_TYPES
from smeta.db import run_in_transaction
from smeta.models.schemas import (
    ActDetailOut,
    ActDetailsUpdate,
    ActOut,
    ActStatusUpdate,
    GenerateActRequest,
    SignatoriesUpdate,
    SignatoryOut,
)
from smeta.services.act_ledger import ActLedger, group_items_by_section
from smeta.services.certificate_forms import build_ks2, build_ks3

router = APIRouter(prefix="/api/acts", tags=["Completion Acts"])
logger = logging.getLogger("smeta-act-routes")


def _act_detail(act) -> dict:
    detail = ActDetailOut.model_validate(act).model_dump()
    detail["sections"] = group_items_by_section(detail["items"])
    return detail


@router.post("/generate", status_code=201)
async def generate_act(
    req: GenerateActRequest,
    tenant_id: str = Depends(get_tenant_id),
    user: CurrentUser = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_transaction_factory),
):
    """Each act type is generated in its own transaction."""
    act_types = ACT_TYPES if req.act_type == "both" else (req.act_type,)
    generated = {}
    for act_type in act_types:
        async def _generate(session: AsyncSession, act_type: str = act_type) -> dict:
            act = await ActLedger(session, tenant_id, user.id).generate(
                req.estimate_id,
                act_type,
                act_date=req.act_date,
                period_from=req.period_from,
                period_to=req.period_to,
                status=req.status,
                project_id=req.project_id,
                notes=req.notes,
            )
            return _act_detail(act)

        generated[act_type] = await run_in_transaction(
            session_factory, _generate, tenant_id=tenant_id, user_id=user.id
        )

    return {
        "message": "Акты успешно сформированы" if len(generated) > 1 else "Акт успешно сформирован",
        "client_act": generated.get("client"),
        "specialist_act": generated.get("specialist"),
    }


@router.get("/estimate/{estimate_id}")
async def list_acts(
    estimate_id: str,
    act_type: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    acts = await ActLedger(db, tenant_id, user.id).list_acts(estimate_id, act_type)
    return {"acts": [ActOut.model_validate(a).model_dump() for a in acts]}


@router.get("/{act_id}")
async def get_act(
    act_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    return _act_detail(await ActLedger(db, tenant_id, user.id).get_act(act_id))


@router.delete("/{act_id}")
async def delete_act(
    act_id: str,
    release_records: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    ledger = ActLedger(db, tenant_id, user.id)
    await ledger.delete_act(act_id)
    released = await ledger.release_records(act_id) if release_records else 0
    return {"deleted": True, "records_released": released}


@router.patch("/{act_id}/status")
async def update_act_status(
    act_id: str,
    req: ActStatusUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    act = await ActLedger(db, tenant_id, user.id).update_status(act_id, req.status)
    return ActOut.model_validate(act).model_dump()


@router.patch("/{act_id}/details")
async def update_act_details(
    act_id: str,
    req: ActDetailsUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    act = await ActLedger(db, tenant_id, user.id).update_details(act_id, **req.model_dump(exclude_none=True))
    return _act_detail(act)


@router.post("/{act_id}/signatories")
async def update_act_signatories(
    act_id: str,
    req: SignatoriesUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    signatories = await ActLedger(db, tenant_id, user.id).update_signatories(
        act_id, [s.model_dump() for s in req.signatories]
    )
    return {"signatories": [SignatoryOut.model_validate(s).model_dump() for s in signatories]}


@router.post("/{act_id}/release")
async def release_act_records(
    act_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    released = await ActLedger(db, tenant_id, user.id).release_records(act_id)
    return {"records_released": released}


@router.get("/{act_id}/ks2")
async def get_ks2(
    act_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await build_ks2(db, tenant_id, act_id)


@router.get("/{act_id}/ks3")
async def get_ks3(
    act_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_scoped_db),
    user: CurrentUser = Depends(get_current_user),
):
    return await build_ks3(db, tenant_id, act_id)
