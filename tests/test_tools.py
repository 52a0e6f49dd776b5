import asyncio

import pytest

from rxvoice import pharmacy_mock
from rxvoice.events import FunctionCallRequest
from rxvoice.pharmacy_mock import check_interactions, get_administration_guide, place_refill
from rxvoice.tools import ToolRouter


@pytest.fixture(autouse=True)
def _fresh_pharmacy():
    pharmacy_mock.reset_mock()
    yield
    pharmacy_mock.reset_mock()


# ----------------- refills -----------------
def test_refill_is_placed_and_decrements_refills():
    out = place_refill("Jane Smith", "01/02/1975", "atorvastatin", "20mg", "Main Street Pharmacy", phone="555-123-5678")
    assert out["status"] == "placed"
    assert out["etaMinutes"] == 15
    assert out["refillsRemaining"] == 2
    assert "Main Street Pharmacy" in out["message"]

    again = place_refill("Jane Smith", "01/02/1975", "Atorvastatin", "20mg", "main street")
    assert again["refillsRemaining"] == 1


def test_refill_eta_depends_on_location():
    out = place_refill("John Doe", "03/15/1980", "Lisinopril", "10mg", "Downtown Pharmacy")
    assert out["status"] == "placed"
    assert out["etaMinutes"] > 15
    assert out["etaMinutes"] % 5 == 0


def test_refill_without_refills_needs_provider():
    out = place_refill("Jane Smith", "01/02/1975", "Metformin", "500mg", "Main Street Pharmacy")
    assert out["status"] == "needs_provider"
    assert out["refillsRemaining"] == 0


@pytest.mark.parametrize(
    "kw",
    [
        dict(name="Jane Smith", dob="02/01/1975"),       # wrong DOB
        dict(name="Jane Smyth", dob="01/02/1975"),       # wrong name
        dict(name="Jane Smith", dob="01/02/1975", phone="555-123-0000"),  # phone does not match
    ],
)
def test_refill_not_found(kw):
    out = place_refill(med="Atorvastatin", dose="20mg", pharmacy="Main Street Pharmacy", **kw)
    assert out["status"] == "not_found"


def test_refill_validates_identity_fields():
    out = place_refill("J4ne", "1975-01-02", "Atorvastatin", "20mg", "Main Street Pharmacy", phone="12")
    assert out["status"] == "validation_error"
    assert len(out["errors"]) == 3


# ----------------- interactions -----------------
def test_class_based_interaction():
    out = check_interactions(["Ibuprofen", "lisinopril"])
    (alert,) = out["alerts"]
    assert alert["severity"] == "medium"
    assert alert["category"] == "drug-drug"
    assert alert["drugPair"] == ["ibuprofen", "lisinopril"]


def test_named_interaction_with_unknown_drug():
    out = check_interactions(["warfarin", "ibuprofen"])
    assert [a["severity"] for a in out["alerts"]] == ["high"]
    assert out["unknown"] == ["warfarin"]


def test_condition_interaction():
    out = check_interactions(["sertraline"], conditions=["Seizure Disorder"])
    (alert,) = out["alerts"]
    assert alert["category"] == "drug-condition"
    assert "seizure disorder" in alert["summary"]


def test_no_interactions():
    out = check_interactions(["amoxicillin", "  "])
    assert out == {"alerts": [], "checked": ["amoxicillin"], "unknown": []}


# ----------------- administration -----------------
def test_administration_guide():
    guide = get_administration_guide("Metformin")
    assert guide["found"] is True
    assert "meals" in guide["instructions"]
    assert "Lactic acidosis" in guide["warning"]

    assert get_administration_guide("Atorvastatin")["foodInteractions"] == ["grapefruit"]
    assert get_administration_guide("unobtainium")["found"] is False


# ----------------- router -----------------
@pytest.mark.asyncio
async def test_router_dispatches_default_handlers():
    router = ToolRouter()
    assert router.names == [
        "drug_info.checkInteractions",
        "drug_info.getAdministrationGuide",
        "refill_service.placeRefill",
    ]
    out = await router.dispatch(FunctionCallRequest(name="drug_info.getAdministrationGuide", args={"med": "ibuprofen"}))
    assert out["found"] is True


@pytest.mark.asyncio
async def test_router_reports_errors_as_payloads():
    async def slow(**kw):
        await asyncio.sleep(1)

    def broken(**kw):
        raise RuntimeError("db down")

    router = ToolRouter({"slow": slow, "broken": broken, "plain": lambda: 42}, timeout_s=0.01)
    router.register("refill_service.placeRefill", place_refill)

    assert "unknown function" in (await router.dispatch(FunctionCallRequest(name="nope")))["error"]
    assert "timed out" in (await router.dispatch(FunctionCallRequest(name="slow")))["error"]
    assert "db down" in (await router.dispatch(FunctionCallRequest(name="broken")))["error"]
    assert "invalid arguments" in (
        await router.dispatch(FunctionCallRequest(name="refill_service.placeRefill", args={"name": "Jane"}))
    )["error"]
    assert await router.dispatch(FunctionCallRequest(name="plain")) == {"result": 42}
