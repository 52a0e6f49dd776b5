import orjson

from rxvoice.audit import AuditLogger, hash_pii, mask_phone_number, redact_details, redact_phi, validate_phi_fields


def test_redact_phi_scrubs_free_text():
    text = "Call 555-123-4567 or mail jane@example.com, born 01/02/1975, SSN 123-45-6789."
    out = redact_phi(text)
    assert "555-123-4567" not in out and "[PHONE_REDACTED]" in out
    assert "[EMAIL_REDACTED]" in out
    assert "[DOB_REDACTED]" in out
    assert "[SSN_REDACTED]" in out


def test_redact_details_blanks_identity_keys_recursively():
    details = {
        "function": "refill_service.placeRefill",
        "args": {"name": "Jane Smith", "dob": "01/02/1975", "phone": "5551234567", "med": "Atorvastatin"},
        "notes": ["reach me at 555 123 4567"],
        "patientName": "Jane",
    }
    out = redact_details(details)
    assert out["args"] == {"name": "[NAME_REDACTED]", "dob": "[REDACTED]", "phone": "[REDACTED]", "med": "Atorvastatin"}
    assert out["notes"] == ["reach me at [PHONE_REDACTED]"]
    assert out["patientName"] == "[NAME_REDACTED]"
    assert out["function"] == "refill_service.placeRefill"


def test_hash_and_mask():
    assert hash_pii("Jane Smith") == hash_pii("  jane smith ")
    assert hash_pii("Jane Smith", salt="a") != hash_pii("Jane Smith", salt="b")
    assert mask_phone_number("(555) 123-4567") == "****4567"
    assert mask_phone_number("12") == "[PHONE_MASKED]"


def test_validate_phi_fields():
    assert validate_phi_fields(name="Mary-Jane O'Neil", dob="12/31/1990", phone="555-123-4567") == (True, [])
    ok, errors = validate_phi_fields(dob="13/01/1990")
    assert not ok and "MM/DD/YYYY" in errors[0]
    ok, errors = validate_phi_fields(dob="02/30/1990")
    assert not ok and "calendar" in errors[0]


def test_audit_logger_writes_redacted_records(tmp_path):
    path = tmp_path / "audit" / "audit.ndjson"
    audit = AuditLogger(str(path))
    audit.log_event("sess-1", "function_invoked", {"args": {"dob": "01/02/1975"}, "ok": True})
    audit.log_event("sess-1", "session_end")

    recs = [orjson.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [r["action"] for r in recs] == ["function_invoked", "session_end"]
    assert recs[0]["evt"] == "audit"
    assert recs[0]["details"] == {"args": {"dob": "[REDACTED]"}, "ok": True}
    assert recs[1]["details"] == {}
