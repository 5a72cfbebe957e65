from typing import Callable, List, Optional, Sequence, Tuple

from .models import UNCATEGORIZED
from .records import (
    AccountRef,
    Classification,
    ClassifiedCandidate,
    Direction,
    RawTransactionCandidate,
    RuleSnapshot,
)

Classifier = Callable[[str], Optional[Classification]]

DEFAULT_CONFIDENCE = 0.5
MAX_RULE_CONFIDENCE = 0.95

# Merchant / utility / income vocabulary. First matching row wins.
DEFAULT_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("swiggy", "zomato", "uber eats", "food", "restaurant", "hotel", "dhaba", "cafe", "pizza",
      "dominos", "mcdonalds", "kfc", "burger"), "Food"),
    (("bigbasket", "blinkit", "zepto", "dmart", "grocery", "reliance fresh", "nature basket",
      "more supermarket", "supermarket", "milk", "vegetables"), "Grocery"),
    (("amazon", "flipkart", "myntra", "ajio", "meesho", "nykaa", "shopping", "croma",
      "reliance digital"), "Shopping"),
    (("uber", "ola", "rapido", "metro", "irctc", "railway", "makemytrip", "goibibo", "cleartrip",
      "yatra", "indigo", "air india", "spicejet", "vistara", "bus", "cab"), "Travel"),
    (("petrol", "diesel", "fuel", "hp pump", "bharat petroleum", "indian oil", "shell", "bpcl",
      "hpcl", "iocl"), "Fuel"),
    (("netflix", "hotstar", "prime video", "spotify", "youtube", "disney", "zee5", "sony liv",
      "jio cinema", "subscription"), "Subscription"),
    (("electricity", "bescom", "tata power", "adani", "torrent power", "light bill", "water", "gas",
      "lpg", "pipeline"), "Utilities"),
    (("airtel", "jio", "vodafone", "vi ", "bsnl", "mobile", "recharge", "broadband", "wifi",
      "internet", "act fibernet"), "Telecom"),
    (("lic", "insurance", "icici pru", "hdfc life", "sbi life", "max life", "star health",
      "bajaj allianz", "policy", "premium"), "Insurance"),
    (("hospital", "doctor", "medical", "pharma", "medicine", "apollo", "medplus", "netmeds", "practo",
      "diagnostic", "lab", "pathology", "clinic", "health"), "Medical"),
    (("rent", "house rent", "pg rent", "maintenance", "society", "association"), "Housing"),
    (("emi", "loan", "equated monthly", "home loan", "car loan", "personal loan"), "EMI Payment"),
    (("salary", "wages", "payroll", "stipend"), "Salary"),
    (("interest", "int.", "fd interest", "rd interest", "savings interest"), "Interest"),
    (("dividend", "div."), "Dividend"),
    (("atm", "cash withdrawal", "neft", "rtgs", "imps", "upi", "transfer"), "Transfer"),
    (("tax", "tds", "gst", "income tax", "advance tax", "self assessment"), "Tax"),
    (("education", "school", "college", "university", "tuition", "course", "exam", "udemy",
      "coursera"), "Education"),
    (("gym", "fitness", "sports", "movie", "pvr", "inox", "bookmyshow", "entertainment",
      "gaming"), "Entertainment"),
    (("donation", "charity", "ngo"), "Donation"),
]


def rule_confidence(hit_count: int) -> float:
    return round(min(MAX_RULE_CONFIDENCE, 0.7 + 0.05 * hit_count), 2)


def learned_rule_classifier(rules: Sequence[RuleSnapshot]) -> Classifier:
    """Classifier over a snapshot of the owner's corpus, most-confirmed patterns first."""
    ranked = sorted(rules, key=lambda r: r.hit_count, reverse=True)

    def classify(description: str) -> Optional[Classification]:
        desc = description.lower()
        for rule in ranked:
            if rule.pattern and rule.pattern.lower() in desc:
                return Classification(
                    category=rule.category or UNCATEGORIZED,
                    confidence=rule_confidence(rule.hit_count),
                    debit_account_id=rule.debit_account_id,
                    credit_account_id=rule.credit_account_id,
                )
        return None

    return classify


def default_keyword_classifier(description: str) -> Optional[Classification]:
    desc = description.lower()
    for keywords, category in DEFAULT_RULES:
        if any(k in desc for k in keywords):
            return Classification(category=category, confidence=DEFAULT_CONFIDENCE)
    return None


def build_chain(rules: Sequence[RuleSnapshot]) -> List[Classifier]:
    return [learned_rule_classifier(rules), default_keyword_classifier]


def classify_description(description: str, chain: Sequence[Classifier]) -> Classification:
    for classifier in chain:
        found = classifier(description or "")
        if found is not None:
            return found
    return Classification(category=UNCATEGORIZED, confidence=0.0)


def _account_named_like(accounts: Sequence[AccountRef], account_type: str, category: str) -> Optional[str]:
    needle = category.lower()
    for acc in accounts:
        if acc.account_type.lower() == account_type and needle in acc.account_name.lower():
            return acc.account_id
    return None


def resolve_accounts(
    classification: Classification,
    direction: Direction,
    source: Optional[AccountRef],
    accounts: Sequence[AccountRef],
) -> Tuple[Optional[str], Optional[str]]:
    """
    Fill the ledger sides a learned rule left open. Money out of the source
    account credits it and debits an expense account named after the category;
    money in debits it and credits a matching income account.
    """
    debit_id = classification.debit_account_id
    credit_id = classification.credit_account_id
    if source is None:
        return debit_id, credit_id

    if direction == Direction.OUTFLOW:
        credit_id = credit_id or source.account_id
        if not debit_id:
            debit_id = _account_named_like(accounts, "expense", classification.category)
    else:
        debit_id = debit_id or source.account_id
        if not credit_id:
            credit_id = _account_named_like(accounts, "income", classification.category)
    return debit_id, credit_id


def classify_candidates(
    candidates: Sequence[RawTransactionCandidate],
    rules: Sequence[RuleSnapshot],
    accounts: Sequence[AccountRef],
    source_account_id: Optional[str] = None,
) -> List[ClassifiedCandidate]:
    chain = build_chain(rules)
    source = None
    if source_account_id:
        source = next((a for a in accounts if str(a.account_id) == str(source_account_id)), None)

    out: List[ClassifiedCandidate] = []
    for tx in candidates:
        found = classify_description(tx.description, chain)
        debit_id, credit_id = resolve_accounts(found, tx.direction, source, accounts)
        out.append(ClassifiedCandidate(
            candidate=tx,
            suggested_category=found.category,
            suggested_debit_account_id=debit_id,
            suggested_credit_account_id=credit_id,
            confidence=found.confidence,
        ))
    return out
