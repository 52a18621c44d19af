"""
test_estimate_repository.py — Loading and saving estimates against SQLite.
"""

import pytest
from sqlalchemy import func, select

from smeta.errors import EstimateNotFoundError, ForeignEstimateItemError
from smeta.models.orm_models import Estimate, EstimateItem, EstimateItemMaterial, WorkCompletion
from smeta.services.coefficient_engine import OriginalPriceStore
from smeta.services.estimate_payload import build_save_payload
from smeta.services.estimate_repository import EstimateRepository
from conftest import TENANT_ID, run


async def _load(factory, estimate_id="est-1"):
    async with factory() as session:
        return await EstimateRepository(session, TENANT_ID).load(estimate_id)


async def _save(factory, payload, **kwargs):
    async with factory() as session:
        async with session.begin():
            return await EstimateRepository(session, TENANT_ID).save(payload, **kwargs)


class TestLoad:

    def test_seeded_estimate_loads_into_tree(self, seeded, session_factory):
        loaded = run(_load(session_factory))
        assert loaded.id == "est-1"
        assert loaded.project_id == "project-1"
        assert loaded.item_ids == ["item-a", "item-b", "item-c"]
        assert loaded.metadata["name"] == "Смета №1"

        titles = [s.title for s in loaded.tree.sections]
        assert titles == ["Черновые работы", "Прочее"]
        rough = loaded.tree.sections[0]
        assert rough.works_total == 2000
        assert rough.materials_total == 300
        assert rough.subtotal == 2300

        item_a = rough.items[0]
        assert item_a.id == "item-a"
        assert item_a.materials[0].name == "Штукатурная смесь"
        assert item_a.materials[0].code == "MIX-25"

    def test_unknown_estimate(self, seeded, session_factory):
        with pytest.raises(EstimateNotFoundError):
            run(_load(session_factory, "missing"))

    def test_other_tenant_cannot_load(self, seeded, session_factory):
        async def scenario():
            async with session_factory() as session:
                return await EstimateRepository(session, "tenant-2").load("est-1")

        with pytest.raises(EstimateNotFoundError):
            run(scenario())


class TestSave:

    def test_save_round_trip_keeps_item_ids(self, seeded, session_factory):
        loaded = run(_load(session_factory))
        tree = loaded.tree.set_work_quantity(0, 0, 12)
        run(_save(session_factory, build_save_payload(tree, loaded.metadata), estimate_id="est-1"))

        reloaded = run(_load(session_factory))
        assert sorted(reloaded.item_ids) == ["item-a", "item-b", "item-c"]
        item_a = reloaded.tree.sections[0].items[0]
        assert item_a.quantity == 12
        assert item_a.materials[0].quantity == 18
        assert item_a.materials[0].total == 360

    def test_removed_items_drop_their_completions(self, seeded, session_factory, complete, sync_session):
        complete("item-b", 2)
        loaded = run(_load(session_factory))
        si, ii = loaded.tree.locate("item-b")
        tree = loaded.tree.delete_work(si, ii)
        run(_save(session_factory, build_save_payload(tree, loaded.metadata), estimate_id="est-1"))

        assert run(_load(session_factory)).item_ids == ["item-a", "item-c"]
        assert sync_session.scalar(select(func.count()).select_from(WorkCompletion)) == 0
        assert sync_session.scalar(
            select(func.count()).select_from(EstimateItem).where(EstimateItem.id == "item-b")
        ) == 0

    def test_create_new_estimate_stores_baselines(self, seeded, session_factory, plastered_tree, sync_session):
        store = OriginalPriceStore()
        store.remember_tree(plastered_tree)
        payload = build_save_payload(plastered_tree, {"name": "Новая"}, project_id="project-1")
        estimate_id = run(_save(session_factory, payload, store=store, current_coefficient=0))

        loaded = run(_load(session_factory, estimate_id))
        assert loaded.metadata["name"] == "Новая"
        assert loaded.store.get("work-plaster") == 100
        assert loaded.tree.total == 1300
        assert sync_session.scalar(
            select(func.count()).select_from(EstimateItemMaterial)
            .join(EstimateItem, EstimateItemMaterial.estimate_item_id == EstimateItem.id)
            .where(EstimateItem.estimate_id == estimate_id)
        ) == 1

    def test_line_ids_of_another_estimate_rejected(self, seeded, session_factory, sync_session):
        loaded = run(_load(session_factory))
        payload = build_save_payload(loaded.tree, {"name": "Копия"}, project_id="project-1")

        with pytest.raises(ForeignEstimateItemError) as exc_info:
            run(_save(session_factory, payload))
        assert exc_info.value.item_ids == ["item-a", "item-b", "item-c"]
        assert exc_info.value.code == "ITEM_OF_OTHER_ESTIMATE"
        assert sync_session.scalar(select(func.count()).select_from(Estimate)) == 1
        assert sync_session.scalar(
            select(func.count()).select_from(EstimateItem).where(EstimateItem.estimate_id == "est-1")
        ) == 3

    def test_unsaved_line_ids_are_kept(self, seeded, session_factory, plastered_tree):
        payload = build_save_payload(plastered_tree, {"name": "Новая"})
        (line_id,) = [row["id"] for row in payload["items"]]
        estimate_id = run(_save(session_factory, payload))
        assert run(_load(session_factory, estimate_id)).item_ids == [line_id]
