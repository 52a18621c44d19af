"""
conftest.py — Shared pytest fixtures for the Smeta backend test suite.

Pure model tests (tree, coefficients, sorting, payload) need nothing but the
in-memory catalog below. Ledger, accumulation, form and API tests run against
a throw-away file-backed SQLite database per test: the schema is created with
a synchronous engine, the async code under test talks to the same file
through ``sqlite+aiosqlite`` with a NullPool so that every ``asyncio.run``
scenario gets fresh connections on its own event loop.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``smeta.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import asyncio
from datetime import date
from decimal import Decimal

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any smeta imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

TENANT_ID = "tenant-1"
USER_ID = "user-1"


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def cement_mix():
    from smeta.services.catalog import CatalogMaterial
    return CatalogMaterial(id="mat-mix", name="Штукатурная смесь", sku="MIX-25", unit="кг", price=20.0)


@pytest.fixture(scope="session")
def primer():
    from smeta.services.catalog import CatalogMaterial
    return CatalogMaterial(id="mat-primer", name="Грунтовка", sku="PR-10", unit="л", price=12.5)


@pytest.fixture(scope="session")
def plaster_work():
    """Catalog work priced at 100 per m² with one material norm of 1.5 kg/m²."""
    from smeta.services.catalog import CatalogWork
    return CatalogWork(
        id="work-plaster",
        name="Штукатурка стен",
        code="2-20",
        unit="м²",
        base_price=100.0,
        phase="Отделка",
        section="Стены",
    )


@pytest.fixture(scope="session")
def catalog(plaster_work, cement_mix, primer):
    """
    In-memory catalog:
      work-plaster  2-20   Отделка   100.00  (norm: mat-mix × 1.5)
      work-demo     1-5    Демонтаж   40.00  (no norms)
      work-paint    2-100  Отделка    60.00  (norm: mat-primer × 0.2)
    """
    from smeta.services.catalog import CatalogWork, InMemoryCatalog, WorkMaterialNorm
    works = [
        plaster_work,
        CatalogWork(id="work-demo", name="Демонтаж перегородок", code="1-5", unit="м²",
                    base_price=40.0, phase="Демонтаж"),
        CatalogWork(id="work-paint", name="Окраска стен", code="2-100", unit="м²",
                    base_price=60.0, phase="Отделка", section="Стены"),
    ]
    return InMemoryCatalog(
        works=works,
        materials=[cement_mix, primer],
        norms={
            "work-plaster": [WorkMaterialNorm(cement_mix, consumption=1.5)],
            "work-paint": [WorkMaterialNorm(primer, consumption=0.2)],
        },
    )


@pytest.fixture
def plastered_tree(plaster_work, cement_mix):
    """One work item: quantity 10 × price 100 with an auto material 1.5 × 20."""
    from smeta.services.catalog import WorkMaterialNorm
    from smeta.services.line_item_tree import EstimateTree
    tree = EstimateTree().insert_work(plaster_work, [WorkMaterialNorm(cement_mix, consumption=1.5)])
    return tree.set_work_quantity(0, 0, 10)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

def run(coro):
    """Drive one async scenario to completion on a fresh event loop."""
    return asyncio.run(coro)


@pytest.fixture
def db_path(tmp_path):
    from smeta.db import Base
    from smeta.models import orm_models  # noqa: F401

    path = tmp_path / "smeta_test.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return path


@pytest.fixture
def sync_session(db_path):
    """Synchronous ORM session on the test database, for seeding and assertions."""
    engine = create_engine(f"sqlite:///{db_path}")
    with Session(engine) as session:
        yield session
    engine.dispose()


@pytest.fixture
def session_factory(db_path):
    from smeta.db import make_engine
    engine = make_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    run(engine.dispose())


@pytest.fixture
def seeded(sync_session):
    """
    Tenant, project, two catalog works and one estimate with three lines:

      item-a  work-a (base 80)   10 × 100   section "Стены"   + mat-1 15 × 20 (auto, 1.5)
      item-b  work-b (no base)    5 × 200   no section
      item-c  manual line         3 × 50    section "Стены"
    """
    from smeta.models.orm_models import (
        Estimate, EstimateItem, EstimateItemMaterial, Material, Project, Tenant, Work,
    )

    sync_session.add_all([
        Tenant(id=TENANT_ID, name="Тестовая компания"),
        Project(
            id="project-1", tenant_id=TENANT_ID, name="Квартира на Ленина",
            object_name="ЖК Север", client="ООО Заказчик", contractor="ООО Подрядчик",
            address="г. Москва, ул. Ленина, 1", contract_number="Д-15",
        ),
        Work(id="work-a", tenant_id=TENANT_ID, code="1-1", name="Штукатурка", unit="м²",
             base_price=Decimal("80"), phase="Черновые работы"),
        Work(id="work-b", tenant_id=TENANT_ID, code="1-2", name="Стяжка пола", unit="м²",
             base_price=None, phase="Черновые работы"),
        Material(id="mat-1", tenant_id=TENANT_ID, sku="MIX-25", name="Штукатурная смесь",
                 unit="кг", price=Decimal("20")),
    ])
    sync_session.flush()
    sync_session.add(Estimate(
        id="est-1", tenant_id=TENANT_ID, project_id="project-1", name="Смета №1",
        estimate_date=date(2025, 1, 15), currency="RUB", original_prices_json={},
    ))
    sync_session.flush()
    sync_session.add_all([
        EstimateItem(id="item-a", estimate_id="est-1", tenant_id=TENANT_ID, work_id="work-a",
                     code="1-1", name="Штукатурка", unit="м²", quantity=Decimal("10"),
                     unit_price=Decimal("100"), final_price=Decimal("1000"),
                     phase="Черновые работы", section="Стены", position_number=1),
        EstimateItem(id="item-b", estimate_id="est-1", tenant_id=TENANT_ID, work_id="work-b",
                     code="1-2", name="Стяжка пола", unit="м²", quantity=Decimal("5"),
                     unit_price=Decimal("200"), final_price=Decimal("1000"),
                     phase="Черновые работы", section=None, position_number=2),
        EstimateItem(id="item-c", estimate_id="est-1", tenant_id=TENANT_ID, work_id=None,
                     code="3-1", name="Вывоз мусора", unit="рейс", quantity=Decimal("3"),
                     unit_price=Decimal("50"), final_price=Decimal("150"),
                     phase="Прочее", section="Стены", position_number=3),
    ])
    sync_session.flush()
    sync_session.add(EstimateItemMaterial(
        estimate_item_id="item-a", material_id="mat-1", quantity=Decimal("15"),
        unit_price=Decimal("20"), total=Decimal("300"), consumption=Decimal("1.5"),
        auto_calculate=True, position_number=1,
    ))
    sync_session.commit()
    return {"tenant_id": TENANT_ID, "estimate_id": "est-1", "project_id": "project-1"}


@pytest.fixture
def ledger_tx(session_factory):
    """
    ``tx(fn)`` runs ``fn(ledger)`` in its own transaction through the
    production transaction runner and returns its result.
    """
    from smeta.db import run_in_transaction
    from smeta.services.act_ledger import ActLedger

    def tx(fn):
        async def work(session):
            return await fn(ActLedger(session, TENANT_ID, USER_ID))
        return run(run_in_transaction(session_factory, work, tenant_id=TENANT_ID, user_id=USER_ID))

    return tx


@pytest.fixture
def complete(ledger_tx):
    """``complete(item_id, quantity, completed=True)`` upserts one completion record."""
    def _complete(item_id, quantity, completed=True):
        return ledger_tx(lambda ledger: ledger.upsert_completion("est-1", item_id, completed, quantity))
    return _complete
