"""
test_act_ledger.py — Completion act generation and the dual-type ledger.

Tests cover:
  - Eligibility (completed, positive quantity, not yet consumed by the type)
  - Independent client / specialist ledgers over the same records
  - Specialist pricing from the catalog base price with estimate fallback
  - Gap-free, never-reused act numbering per (tenant, type, year)
  - Atomicity: a failed generation leaves no act, no number, no back-reference
  - Explicit release of records after an act is deleted
  - Header details, signatories and completion record bookkeeping
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from smeta.errors import (
    ActNotFoundError,
    EstimateNotFoundError,
    InvalidActStatusError,
    InvalidActTypeError,
    NoCompletedWorksError,
)
from smeta.models.orm_models import ActNumberSequence, CompletionAct, EstimateItem, Tenant, Work
from smeta.services.act_ledger import (
    format_act_number,
    group_items_by_section,
    parse_act_number,
)

FEB = date(2025, 2, 10)


def _count(sync_session, model):
    return sync_session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def generate(ledger_tx):
    def _generate(act_type="client", act_date=FEB, **kwargs):
        return ledger_tx(lambda ledger: ledger.generate("est-1", act_type, act_date=act_date, **kwargs))
    return _generate


@pytest.fixture
def two_done(seeded, complete):
    """item-a 4 of 10 and item-b 2 of 5 marked done."""
    complete("item-a", 4)
    complete("item-b", 2)


# ===========================================================================
# Class 1: Number helpers
# ===========================================================================

class TestActNumbers:

    def test_format(self):
        assert format_act_number("client", 2025, 1) == "ACT-CL-2025-001"
        assert format_act_number("specialist", 2025, 42) == "ACT-SP-2025-042"
        assert format_act_number("client", 2025, 1234) == "ACT-CL-2025-1234"

    def test_format_rejects_unknown_type(self):
        with pytest.raises(InvalidActTypeError):
            format_act_number("weekly", 2025, 1)

    @pytest.mark.parametrize("number, expected", [
        ("ACT-CL-2025-007", 7),
        ("ACT-SP-2024-120", 120),
        ("ACT-CL-2025-", None),
        (None, None),
    ])
    def test_parse(self, number, expected):
        assert parse_act_number(number) == expected


# ===========================================================================
# Class 2: Generation
# ===========================================================================

class TestGenerate:

    def test_client_act_snapshots_estimate_prices(self, two_done, generate):
        act = generate("client")
        assert act.act_number == "ACT-CL-2025-001"
        assert act.act_type == "client"
        assert act.project_id == "project-1"
        assert act.status == "draft"
        assert float(act.total_amount) == 800
        assert float(act.total_quantity) == 6
        assert act.work_count == 2
        assert act.period_to == date.today()

        first, second = act.items
        assert (first.estimate_item_id, first.position_number) == ("item-a", 1)
        assert (second.estimate_item_id, second.position_number) == ("item-b", 2)
        assert float(first.unit_price) == 100 and float(first.total_price) == 400
        assert float(first.planned_quantity) == 10
        assert first.work_code == "1-1"
        assert second.section is None

    def test_specialist_act_uses_catalog_base_price(self, two_done, generate):
        act = generate("specialist")
        assert act.act_number == "ACT-SP-2025-001"
        prices = {i.estimate_item_id: float(i.unit_price) for i in act.items}
        # work-b has no base price, so the estimate price applies
        assert prices == {"item-a": 80, "item-b": 200}
        assert float(act.total_amount) == 720

    def test_specialist_price_ignores_other_tenants_catalog(self, seeded, sync_session, complete, generate):
        sync_session.add(Tenant(id="tenant-2", name="Чужая компания"))
        sync_session.flush()
        sync_session.add(Work(id="work-foreign", tenant_id="tenant-2", code="1-2", name="Стяжка пола",
                              base_price=Decimal("999")))
        sync_session.flush()
        sync_session.execute(
            update(EstimateItem).where(EstimateItem.id == "item-b").values(work_id="work-foreign")
        )
        sync_session.commit()
        complete("item-b", 2)

        (item,) = generate("specialist").items
        assert float(item.unit_price) == 200
        assert float(item.total_price) == 400

    def test_same_type_cannot_consume_twice(self, two_done, generate):
        generate("client")
        with pytest.raises(NoCompletedWorksError):
            generate("client")

    def test_types_are_independent(self, two_done, generate, ledger_tx):
        client = generate("client")
        specialist = generate("specialist")
        records = {r["estimate_item_id"]: r for r in ledger_tx(lambda ledger: ledger.list_completions("est-1"))}
        assert records["item-a"]["last_client_act_id"] == client.id
        assert records["item-a"]["last_specialist_act_id"] == specialist.id
        assert records["item-a"]["last_act_id"] == specialist.id
        assert records["item-a"]["last_act_number"] == "ACT-SP-2025-001"
        assert records["item-a"]["last_act_type"] == "specialist"

    def test_not_completed_and_zero_quantity_are_ineligible(self, seeded, complete, generate, sync_session):
        complete("item-a", 0)
        complete("item-b", 3, completed=False)
        with pytest.raises(NoCompletedWorksError):
            generate("client")
        assert _count(sync_session, CompletionAct) == 0
        assert _count(sync_session, ActNumberSequence) == 0

    def test_new_records_join_the_next_act(self, two_done, complete, generate):
        generate("client")
        complete("item-c", 1)
        act = generate("client")
        assert [i.estimate_item_id for i in act.items] == ["item-c"]
        assert act.act_number == "ACT-CL-2025-002"

    def test_unknown_estimate(self, seeded, ledger_tx):
        with pytest.raises(EstimateNotFoundError):
            ledger_tx(lambda ledger: ledger.generate("missing", "client", act_date=FEB))

    def test_invalid_type_and_status(self, two_done, generate):
        with pytest.raises(InvalidActTypeError):
            generate("weekly")
        with pytest.raises(InvalidActStatusError):
            generate("client", status="archived")

    def test_explicit_fields_are_kept(self, two_done, generate):
        act = generate(
            "client",
            period_from=date(2025, 2, 1),
            period_to=date(2025, 2, 9),
            status="pending",
            notes="Первый этап",
        )
        assert act.period_from == date(2025, 2, 1)
        assert act.period_to == date(2025, 2, 9)
        assert act.status == "pending"
        assert act.notes == "Первый этап"


# ===========================================================================
# Class 3: Numbering and atomicity
# ===========================================================================

class TestNumberingAndAtomicity:

    def test_numbers_are_sequential_and_never_reused(self, two_done, generate, ledger_tx):
        first = generate("client")
        ledger_tx(lambda ledger: ledger.release_records(first.id))
        second = generate("client")
        assert second.act_number == "ACT-CL-2025-002"

        async def delete_and_release(ledger):
            await ledger.delete_act(second.id)
            return await ledger.release_records(second.id)

        assert ledger_tx(delete_and_release) == 2
        third = generate("client")
        assert third.act_number == "ACT-CL-2025-003"

    def test_sequences_are_per_type_and_year(self, two_done, generate, ledger_tx):
        assert generate("client", act_date=date(2024, 12, 30)).act_number == "ACT-CL-2024-001"
        assert generate("specialist").act_number == "ACT-SP-2025-001"

    def test_sequence_seeded_from_existing_numbers(self, two_done, generate, sync_session):
        sync_session.add(CompletionAct(
            tenant_id="tenant-1", estimate_id="est-1", act_type="client",
            act_number="ACT-CL-2025-007", act_date=date(2025, 1, 20), status="cancelled",
        ))
        sync_session.commit()
        assert generate("client").act_number == "ACT-CL-2025-008"

    def test_failure_after_generation_rolls_everything_back(self, two_done, ledger_tx, generate, sync_session):
        async def generate_then_fail(ledger):
            await ledger.generate("est-1", "client", act_date=FEB)
            raise RuntimeError("printing failed")

        with pytest.raises(RuntimeError):
            ledger_tx(generate_then_fail)

        assert _count(sync_session, CompletionAct) == 0
        assert _count(sync_session, ActNumberSequence) == 0
        records = ledger_tx(lambda ledger: ledger.list_completions("est-1"))
        assert all(r["last_client_act_id"] is None for r in records)

        act = generate("client")
        assert act.act_number == "ACT-CL-2025-001"
        assert act.work_count == 2


# ===========================================================================
# Class 4: Deleting and releasing
# ===========================================================================

class TestDeleteAndRelease:

    def test_delete_keeps_records_consumed(self, two_done, generate, ledger_tx):
        act = generate("client")
        ledger_tx(lambda ledger: ledger.delete_act(act.id))
        assert ledger_tx(lambda ledger: ledger.list_acts("est-1")) == []
        with pytest.raises(NoCompletedWorksError):
            generate("client")

    def test_release_after_delete_makes_records_eligible(self, two_done, generate, ledger_tx):
        act = generate("client")
        ledger_tx(lambda ledger: ledger.delete_act(act.id))
        assert ledger_tx(lambda ledger: ledger.release_records(act.id)) == 2
        assert generate("client").work_count == 2

    def test_release_only_touches_its_own_type(self, two_done, generate, ledger_tx):
        client = generate("client")
        specialist = generate("specialist")
        ledger_tx(lambda ledger: ledger.release_records(specialist.id))

        records = ledger_tx(lambda ledger: ledger.list_completions("est-1"))
        for record in records:
            assert record["last_specialist_act_id"] is None
            assert record["last_client_act_id"] == client.id
            assert record["last_act_id"] == client.id
        with pytest.raises(NoCompletedWorksError):
            generate("client")

    def test_delete_unknown_act(self, seeded, ledger_tx):
        with pytest.raises(ActNotFoundError):
            ledger_tx(lambda ledger: ledger.delete_act("missing"))


# ===========================================================================
# Class 5: Act maintenance
# ===========================================================================

class TestActMaintenance:

    def test_status_update(self, two_done, generate, ledger_tx):
        act = generate("client")
        updated = ledger_tx(lambda ledger: ledger.update_status(act.id, "approved"))
        assert updated.status == "approved"
        with pytest.raises(InvalidActStatusError):
            ledger_tx(lambda ledger: ledger.update_status(act.id, "archived"))

    def test_list_acts_newest_first_with_type_filter(self, two_done, complete, generate, ledger_tx):
        generate("client")
        complete("item-c", 1)
        generate("client", act_date=date(2025, 3, 1))
        generate("specialist")
        acts = ledger_tx(lambda ledger: ledger.list_acts("est-1", "client"))
        assert [a.act_date for a in acts] == [date(2025, 3, 1), FEB]
        assert len(ledger_tx(lambda ledger: ledger.list_acts("est-1"))) == 3
        with pytest.raises(InvalidActTypeError):
            ledger_tx(lambda ledger: ledger.list_acts("est-1", "weekly"))

    def test_details_update_skips_none(self, two_done, generate, ledger_tx):
        act = generate("client", notes="исходное")
        updated = ledger_tx(lambda ledger: ledger.update_details(
            act.id, customer_name="ООО Новый заказчик", contract_date=date(2025, 1, 5), notes=None,
        ))
        assert updated.customer_name == "ООО Новый заказчик"
        assert updated.contract_date == date(2025, 1, 5)
        assert updated.notes == "исходное"

    def test_details_reject_unknown_fields(self, two_done, generate, ledger_tx):
        act = generate("client")
        with pytest.raises(ValueError):
            ledger_tx(lambda ledger: ledger.update_details(act.id, act_number="X"))

    def test_signatories_are_replaced(self, two_done, generate, ledger_tx):
        act = generate("client")
        ledger_tx(lambda ledger: ledger.update_signatories(act.id, [{"role": "customer_chief", "full_name": "Иванов"}]))
        ledger_tx(lambda ledger: ledger.update_signatories(act.id, [
            {"role": "contractor_chief", "full_name": "Петров", "position": "Директор"},
            {"role": "customer_chief", "full_name": "Сидоров"},
        ]))
        stored = ledger_tx(lambda ledger: ledger.get_act(act.id))
        assert sorted(s.full_name for s in stored.signatories) == ["Петров", "Сидоров"]


# ===========================================================================
# Class 6: Completion records
# ===========================================================================

class TestCompletionRecords:

    def test_upsert_is_idempotent_per_item(self, seeded, complete, ledger_tx):
        complete("item-a", 2)
        complete("item-a", 5)
        records = ledger_tx(lambda ledger: ledger.list_completions("est-1"))
        assert len(records) == 1
        assert records[0]["actual_quantity"] == 5
        assert records[0]["completion_date"] is not None
        assert records[0]["last_act_number"] is None

    def test_unmarking_keeps_record(self, seeded, complete, ledger_tx):
        complete("item-a", 2)
        complete("item-a", 2, completed=False)
        (record,) = ledger_tx(lambda ledger: ledger.list_completions("est-1"))
        assert record["completed"] is False

    def test_batch_upsert(self, seeded, ledger_tx):
        ledger_tx(lambda ledger: ledger.batch_upsert_completions("est-1", [
            {"estimate_item_id": "item-a", "completed": True, "actual_quantity": 1, "actual_total": 100},
            {"estimate_item_id": "item-b"},
        ]))
        records = {r["estimate_item_id"]: r for r in ledger_tx(lambda ledger: ledger.list_completions("est-1"))}
        assert records["item-a"]["actual_total"] == 100
        assert records["item-b"]["completed"] is False
        assert records["item-b"]["actual_total"] is None

    def test_delete_completion(self, seeded, complete, ledger_tx):
        complete("item-a", 2)
        assert ledger_tx(lambda ledger: ledger.delete_completion("est-1", "item-a")) is True
        assert ledger_tx(lambda ledger: ledger.delete_completion("est-1", "item-a")) is False


# ===========================================================================
# Class 7: Display grouping
# ===========================================================================

class TestGroupItemsBySection:

    def test_groups_keep_first_seen_order(self):
        items = [
            {"section": "Стены", "total_price": 400},
            {"section": None, "total_price": 50.5},
            {"section": "Стены", "total_price": 100.25},
        ]
        groups = group_items_by_section(items)
        assert [g["section"] for g in groups] == ["Стены", "Без раздела"]
        assert groups[0]["section_total"] == 500.25
        assert len(groups[0]["items"]) == 2
        assert groups[1]["section_total"] == 50.5

    def test_accepts_orm_rows(self, two_done, generate):
        groups = group_items_by_section(generate("client").items)
        assert [(g["section"], g["section_total"]) for g in groups] == [("Стены", 400), ("Без раздела", 400)]
