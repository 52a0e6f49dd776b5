from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .audit import hash_pii, validate_phi_fields


@dataclass
class Prescription:
    patient_hash: str
    dob_hash: str
    phone_last_four: Optional[str]
    medication: str
    dosage: str
    quantity: int
    refills_remaining: int
    pharmacy: str


@dataclass
class DrugInfo:
    name: str
    drug_class: str
    common_dosages: List[str]
    interacting_conditions: List[str] = field(default_factory=list)
    food_interactions: List[str] = field(default_factory=list)
    black_box_warning: Optional[str] = None


@dataclass
class InteractionRule:
    severity: str  # "high" | "medium" | "low"
    summary: str
    guidance: str
    drug1: Optional[str] = None
    drug2: Optional[str] = None
    class1: Optional[str] = None
    class2: Optional[str] = None


def _seed_prescriptions() -> List[Prescription]:
    # identities are stored hashed, as a real pharmacy backend would
    return [
        Prescription(hash_pii("Jane Smith"), hash_pii("01/02/1975"), "5678", "Atorvastatin", "20mg", 30, 3, "Main Street Pharmacy"),
        Prescription(hash_pii("John Doe"), hash_pii("03/15/1980"), "1234", "Lisinopril", "10mg", 30, 2, "Downtown Pharmacy"),
        Prescription(hash_pii("Jane Smith"), hash_pii("01/02/1975"), "5678", "Metformin", "500mg", 60, 0, "Main Street Pharmacy"),
    ]


_PRESCRIPTIONS: List[Prescription] = _seed_prescriptions()

_DRUGS: Dict[str, DrugInfo] = {
    "amoxicillin": DrugInfo("Amoxicillin", "antibiotic", ["250mg", "500mg", "875mg"], ["mononucleosis", "kidney disease"]),
    "atorvastatin": DrugInfo("Atorvastatin", "statin", ["10mg", "20mg", "40mg", "80mg"], ["liver disease", "kidney disease"], ["grapefruit"]),
    "lisinopril": DrugInfo("Lisinopril", "ace inhibitor", ["2.5mg", "5mg", "10mg", "20mg", "40mg"], ["kidney disease", "diabetes"]),
    "metformin": DrugInfo(
        "Metformin", "antidiabetic", ["500mg", "750mg", "1000mg"], ["kidney disease", "liver disease", "heart failure"],
        black_box_warning="Lactic acidosis risk in patients with kidney or liver problems",
    ),
    "ibuprofen": DrugInfo("Ibuprofen", "nsaid", ["200mg", "400mg", "600mg", "800mg"], ["heart disease", "kidney disease", "stomach ulcers"]),
    "sertraline": DrugInfo(
        "Sertraline", "antidepressant", ["25mg", "50mg", "100mg", "150mg", "200mg"], ["bipolar disorder", "seizure disorder"],
        black_box_warning="Increased suicidal thinking in children and young adults",
    ),
}

_RULES: List[InteractionRule] = [
    InteractionRule("high", "SSRI-MAOI interaction risk",
                    "This combination can cause serotonin syndrome, a potentially life-threatening condition. "
                    "These medications should not be taken together.",
                    drug1="sertraline", class2="maoi"),
    InteractionRule("medium", "NSAIDs may reduce ACE inhibitor effectiveness",
                    "NSAIDs can reduce the blood pressure lowering effects of ACE inhibitors and may increase "
                    "kidney problems. Monitor blood pressure and kidney function.",
                    class1="nsaid", class2="ace inhibitor"),
    InteractionRule("high", "Increased bleeding risk",
                    "This combination significantly increases the risk of bleeding. Use alternative pain "
                    "relievers like acetaminophen when possible.",
                    drug1="warfarin", drug2="ibuprofen"),
    InteractionRule("high", "Lactic acidosis risk",
                    "Stop metformin before contrast procedures and restart only after kidney function is "
                    "confirmed normal.",
                    drug1="metformin", drug2="contrast dye"),
    InteractionRule("medium", "Increased muscle toxicity risk",
                    "This combination increases the risk of muscle problems. Consider alternative cholesterol "
                    "medications or close monitoring.",
                    class1="statin", drug2="gemfibrozil"),
]

_GUIDES: Dict[str, Dict[str, Any]] = {
    "antibiotic": {
        "instructions": "Take with a full glass of water. Complete the entire course even if you feel better.",
        "timing": "Take at evenly spaced intervals throughout the day.",
        "seek_help": "Contact your healthcare provider if you experience severe diarrhea, rash, or difficulty breathing.",
        "side_effects": ["Nausea", "Diarrhea", "Stomach upset"],
    },
    "statin": {
        "instructions": "Usually taken once daily in the evening with or without food.",
        "seek_help": "Contact your doctor if you experience unexplained muscle pain, tenderness, or weakness.",
        "side_effects": ["Muscle pain", "Headache", "Nausea"],
    },
    "ace inhibitor": {
        "instructions": "Take at the same time each day, with or without food.",
        "seek_help": "Seek immediate medical attention if you experience swelling of the face, lips, or throat.",
        "side_effects": ["Dry cough", "Dizziness", "Fatigue"],
    },
    "nsaid": {
        "instructions": "Take with food or milk to reduce stomach irritation.",
        "seek_help": "Stop use and contact your doctor if you experience stomach pain or signs of bleeding.",
        "side_effects": ["Stomach upset", "Heartburn", "Dizziness"],
    },
    "antidiabetic": {
        "instructions": "Take as directed with meals to help control blood sugar.",
        "seek_help": "Monitor blood sugar regularly. Seek help if you have symptoms of low or high blood sugar.",
        "side_effects": ["Low blood sugar", "Nausea", "Diarrhea"],
    },
    "antidepressant": {
        "instructions": "Take at the same time each day. It may take 4 to 6 weeks to see full effects.",
        "seek_help": "Contact your healthcare provider if you notice worsening mood or unusual changes.",
        "side_effects": ["Nausea", "Drowsiness", "Dry mouth"],
    },
}

_LOCATION_FACTORS = {"downtown": 1.5, "mall": 1.3, "main": 1.0, "express": 0.7, "drive-thru": 0.8}
_COMPLEX_MEDS = ("insulin", "compound", "injection", "cream", "ointment")


def reset_mock():
    _PRESCRIPTIONS[:] = _seed_prescriptions()


def _normalize(name: str) -> str:
    return re.sub(r"[^\w\s]", "", name.lower().strip())


def _drug_class(name: str) -> Optional[str]:
    drug = _DRUGS.get(name)
    return drug.drug_class if drug else None


def _side_matches(drug: str, name: Optional[str], cls: Optional[str]) -> bool:
    if name is not None:
        return drug == name
    return cls is not None and _drug_class(drug) == cls


def _find_rule(a: str, b: str) -> Optional[InteractionRule]:
    for r in _RULES:
        if _side_matches(a, r.drug1, r.class1) and _side_matches(b, r.drug2, r.class2):
            return r
        if _side_matches(b, r.drug1, r.class1) and _side_matches(a, r.drug2, r.class2):
            return r
    return None


def _eta_minutes(pharmacy: str, medication: str) -> int:
    base = 15.0
    loc = pharmacy.lower()
    for key, factor in _LOCATION_FACTORS.items():
        if key in loc:
            base *= factor
            break
    if any(m in medication.lower() for m in _COMPLEX_MEDS):
        base *= 1.4
    return max(5, int(round(base / 5.0)) * 5)


def _find_prescription(name: str, dob: str, med: str, dose: str, pharmacy: str, phone: Optional[str]) -> Optional[Prescription]:
    name_h, dob_h = hash_pii(name), hash_pii(dob)
    last4 = re.sub(r"\D", "", phone)[-4:] if phone else None
    for p in _PRESCRIPTIONS:
        if p.patient_hash != name_h or p.dob_hash != dob_h:
            continue
        if med.lower() not in p.medication.lower() or dose.lower() not in p.dosage.lower():
            continue
        if pharmacy.lower() not in p.pharmacy.lower() and p.pharmacy.lower() not in pharmacy.lower():
            continue
        if last4 and p.phone_last_four != last4:
            continue
        return p
    return None


# ----------------- tool entry points -----------------
def place_refill(
    name: str, dob: str, med: str, dose: str, pharmacy: str, qty: Optional[int] = None, phone: Optional[str] = None
) -> Dict[str, Any]:
    ok, errors = validate_phi_fields(name=name, dob=dob, phone=phone)
    if not ok:
        return {"status": "validation_error", "message": "Please provide valid patient information.", "errors": errors}

    rx = _find_prescription(name, dob, med, dose, pharmacy, phone)
    if rx is None:
        return {
            "status": "not_found",
            "message": (
                f"I couldn't find a prescription for {med} {dose} under the provided information. "
                "Please verify the medication name, dosage, and patient details."
            ),
        }

    if rx.refills_remaining <= 0:
        return {
            "status": "needs_provider",
            "message": (
                f"This prescription for {rx.medication} has no refills remaining. I'll contact your prescriber "
                "for a new prescription. You should hear back within 1-2 business days."
            ),
            "refillsRemaining": 0,
        }

    rx.refills_remaining -= 1
    eta = _eta_minutes(rx.pharmacy, rx.medication)
    return {
        "status": "placed",
        "message": (
            f"Your refill for {rx.medication} {rx.dosage} will be ready for pickup in about {eta} minutes "
            f"at {rx.pharmacy}."
        ),
        "etaMinutes": eta,
        "refillsRemaining": rx.refills_remaining,
        "quantity": qty or rx.quantity,
    }


def check_interactions(meds: List[str], conditions: Optional[List[str]] = None) -> Dict[str, Any]:
    names = [_normalize(m) for m in meds if m and m.strip()]
    conds = [c.lower().strip() for c in (conditions or []) if c and c.strip()]
    alerts: List[Dict[str, Any]] = []

    for i in range(len(names)):
        for j in range(i + 1, len(names)):
            rule = _find_rule(names[i], names[j])
            if rule:
                alerts.append({
                    "severity": rule.severity,
                    "summary": rule.summary,
                    "guidance": rule.guidance,
                    "drugPair": [names[i], names[j]],
                    "category": "drug-drug",
                })

    by_class: Dict[str, List[str]] = {}
    for n in names:
        cls = _drug_class(n)
        if cls:
            by_class.setdefault(cls, []).append(n)
    for cls, members in by_class.items():
        if len(members) > 1:
            alerts.append({
                "severity": "medium",
                "summary": f"Multiple {cls} medications detected",
                "guidance": (
                    f"Taking multiple medications in the same class ({', '.join(members)}) may increase the risk "
                    "of side effects. Please consult your pharmacist about dosing and timing."
                ),
                "category": "duplicate-therapy",
            })

    for n in names:
        drug = _DRUGS.get(n)
        if not drug:
            continue
        for cond in conds:
            if any(cond in c for c in drug.interacting_conditions):
                alerts.append({
                    "severity": "medium",
                    "summary": f"{drug.name} may interact with {cond}",
                    "guidance": f"This medication may not be suitable for patients with {cond}. Please consult your healthcare provider.",
                    "category": "drug-condition",
                })

    unknown = [n for n in names if n not in _DRUGS]
    return {"alerts": alerts, "checked": names, "unknown": unknown}


def get_administration_guide(med: str) -> Dict[str, Any]:
    drug = _DRUGS.get(_normalize(med))
    if drug is None:
        return {"found": False, "message": f"I don't have administration guidance for {med}. Please ask your pharmacist."}
    base = _GUIDES.get(drug.drug_class, {})
    guide: Dict[str, Any] = {
        "found": True,
        "medication": drug.name,
        "instructions": base.get("instructions", "Take as directed by your healthcare provider."),
        "commonSideEffects": base.get("side_effects", ["Consult your pharmacist for side effect information"]),
        "whenToSeekHelp": base.get("seek_help", "Contact your healthcare provider if you experience any concerning symptoms."),
        "foodInteractions": drug.food_interactions,
        "storage": "Store at room temperature away from moisture and heat.",
    }
    if base.get("timing"):
        guide["timing"] = base["timing"]
    if drug.black_box_warning:
        guide["warning"] = drug.black_box_warning
    return guide

