import os
import sys
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


os.environ.setdefault('DATABASE_URL', 'sqlite:///./.ledgerflow-test.sqlite3')

from ledgerflow.classifier import build_chain, classify_candidates, classify_description, rule_confidence
from ledgerflow.committer import ConfirmReport, OutcomeKind, RowOutcome, derive_rule_pattern
from ledgerflow.records import AccountRef, Direction, RawTransactionCandidate, RuleSnapshot

ACCOUNTS = [
    AccountRef(account_id='bank', account_name='HDFC Savings', account_type='Asset'),
    AccountRef(account_id='food', account_name='Food & Dining', account_type='Expense'),
    AccountRef(account_id='salary', account_name='Salary Income', account_type='Income'),
]


def candidate(description, direction=Direction.OUTFLOW):
    return RawTransactionCandidate(
        date='2024-04-01',
        description=description,
        amount=Decimal('100.00'),
        direction=direction,
    )


def test_rule_confidence_grows_with_hits_and_caps():
    assert rule_confidence(1) == 0.75
    assert rule_confidence(3) == 0.85
    assert rule_confidence(6) == 0.95
    assert rule_confidence(50) == 0.95


def test_learned_rules_beat_defaults_and_prefer_more_hits():
    rules = [
        RuleSnapshot(pattern='swiggy', category='Dining Out', debit_account_id=None,
                     credit_account_id=None, hit_count=2),
        RuleSnapshot(pattern='upi swiggy', category='Food Delivery', debit_account_id='food',
                     credit_account_id=None, hit_count=6),
    ]
    found = classify_description('UPI SWIGGY ORDER 1234', build_chain(rules))
    assert found.category == 'Food Delivery'
    assert found.confidence == 0.95
    assert found.debit_account_id == 'food'


def test_default_keywords_and_uncategorized():
    chain = build_chain([])
    food = classify_description('ZOMATO ONLINE ORDER', chain)
    assert food.category == 'Food'
    assert food.confidence == 0.5

    unknown = classify_description('XYZ LTD 9981', chain)
    assert unknown.category == 'Uncategorized'
    assert unknown.confidence == 0.0


def test_classify_candidates_fills_accounts_from_source():
    out = classify_candidates(
        [candidate('Swiggy dinner'), candidate('Salary April', Direction.INFLOW), candidate('XYZ LTD')],
        [],
        ACCOUNTS,
        source_account_id='bank',
    )
    dinner, salary, unknown = out

    assert dinner.suggested_category == 'Food'
    assert dinner.suggested_credit_account_id == 'bank'
    assert dinner.suggested_debit_account_id == 'food'

    assert salary.suggested_category == 'Salary'
    assert salary.suggested_debit_account_id == 'bank'
    assert salary.suggested_credit_account_id == 'salary'

    assert unknown.suggested_category == 'Uncategorized'
    assert unknown.suggested_credit_account_id == 'bank'
    assert unknown.suggested_debit_account_id is None


def test_classify_candidates_without_source_keeps_rule_accounts_only():
    rules = [RuleSnapshot(pattern='netflix', category='Subscription', debit_account_id='food',
                          credit_account_id='bank', hit_count=1)]
    out = classify_candidates([candidate('NETFLIX.COM')], rules, ACCOUNTS)
    assert out[0].suggested_debit_account_id == 'food'
    assert out[0].suggested_credit_account_id == 'bank'
    assert out[0].confidence == 0.75


def test_derive_rule_pattern():
    assert derive_rule_pattern('UPI/SWIGGY*Bangalore 12345 order pay now') == 'upi swiggy bangalore order'
    assert derive_rule_pattern('Coffee Shop') == 'coffee shop'
    assert derive_rule_pattern('AB 12 CD') is None
    assert derive_rule_pattern(None) is None


def test_confirm_report_counts_and_message():
    report = ConfirmReport(outcomes=[
        RowOutcome(1, OutcomeKind.COMMITTED, transaction_id='t1'),
        RowOutcome(2, OutcomeKind.SKIPPED, 'duplicate'),
        RowOutcome(3, OutcomeKind.FAILED, 'Row 3: boom'),
    ])
    assert report.imported == 1
    assert report.skipped == 1
    assert report.failed == 1
    assert report.errors() == ['Row 3: boom']
    assert report.message == 'Imported 1 transactions, skipped 1 (duplicates or missing accounts)'
    assert ConfirmReport().message == 'Imported 0 transactions'
