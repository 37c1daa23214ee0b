"""
Baseline versioning tests.

Tests cover:
  - reconciliation is v1 plus Σ deltas, independent of delta order
  - lock_original_baseline runs once (AlreadyLocked, benign)
  - append_version needs a locked baseline
  - the current baseline is recomputed from history, not read from the
    denormalised milestone columns
"""

from datetime import date
from decimal import Decimal

import pytest

from tests import factories
from tracker.core.exceptions import AlreadyLocked, MissingPrerequisite
from tracker.models import db
from tracker.models.baseline import BaselineVersion
from tracker.services import baseline_service
from tracker.services.baseline_service import reconcile


def _v(version, *, start=None, end=None, billable=None, ds=0, de=0, dc="0"):
    return BaselineVersion(
        milestone_id=1,
        version=version,
        baseline_start_date=start,
        baseline_end_date=end,
        baseline_billable=Decimal(billable) if billable is not None else None,
        start_delta_days=ds,
        end_delta_days=de,
        cost_delta=Decimal(dc),
    )


class TestReconcile:
    def test_original_only(self):
        snap = reconcile([_v(1, start=date(2026, 1, 1), end=date(2026, 2, 1), billable="5000")])
        assert snap.version == 1
        assert snap.baseline_billable == Decimal("5000")
        assert snap.baseline_end_date == date(2026, 2, 1)

    def test_sum_of_deltas(self):
        history = [
            _v(1, start=date(2026, 1, 1), end=date(2026, 2, 1), billable="5000"),
            _v(2, de=10, dc="1500"),
            _v(3, ds=2, de=-3, dc="-250.50"),
        ]
        snap = reconcile(history)
        assert snap.version == 3
        assert snap.baseline_start_date == date(2026, 1, 3)
        assert snap.baseline_end_date == date(2026, 2, 8)
        assert snap.baseline_billable == Decimal("6249.50")

    def test_delta_order_does_not_matter(self):
        original = _v(1, start=date(2026, 1, 1), end=date(2026, 2, 1), billable="5000")
        a = reconcile([original, _v(2, de=10, dc="1500"), _v(3, ds=2, de=-3, dc="-250")])
        b = reconcile([original, _v(2, ds=2, de=-3, dc="-250"), _v(3, de=10, dc="1500")])
        assert a == b

    def test_input_order_does_not_matter(self):
        history = [_v(1, billable="100"), _v(2, dc="10"), _v(3, dc="20")]
        assert reconcile(history) == reconcile(list(reversed(history)))

    def test_missing_original_gives_none(self):
        assert reconcile([]) is None
        assert reconcile([_v(2, dc="10")]) is None

    def test_none_dates_stay_none(self):
        snap = reconcile([_v(1, billable="100"), _v(2, ds=5, de=5)])
        assert snap.baseline_start_date is None
        assert snap.baseline_end_date is None


class TestLockAndAppend:
    def test_lock_twice_is_already_locked(self, team):
        m = factories.make_milestone(team.project)
        baseline_service.lock_original_baseline(m)
        db.session.commit()
        with pytest.raises(AlreadyLocked) as exc_info:
            baseline_service.lock_original_baseline(m)
        assert exc_info.value.benign is True
        assert baseline_service.next_version_number(m.id) == 2

    def test_append_requires_lock(self, team):
        m = factories.make_milestone(team.project)
        variation = factories.make_variation(team.project)
        with pytest.raises(MissingPrerequisite) as exc_info:
            baseline_service.append_version(m, variation, start_delta_days=None, end_delta_days=None, cost_delta=1)
        assert exc_info.value.rule == "BaselineNotLocked"

    def test_append_rewrites_denormalised_fields(self, team):
        m = factories.make_milestone(team.project, billable="10000", end=date(2026, 3, 27))
        baseline_service.lock_original_baseline(m)
        variation = factories.make_variation(team.project)
        v2 = baseline_service.append_version(m, variation, start_delta_days=None, end_delta_days=7, cost_delta="500")
        db.session.commit()
        assert v2.version == 2
        assert v2.start_delta_days == 0
        assert m.baseline_billable == Decimal("10500")
        assert m.baseline_end_date == date(2026, 4, 3)

    def test_current_baseline_ignores_tampered_columns(self, team):
        m = factories.make_milestone(team.project, billable="10000")
        baseline_service.lock_original_baseline(m)
        db.session.commit()
        m.baseline_billable = Decimal("1")
        db.session.commit()
        assert baseline_service.current_baseline(m.id).baseline_billable == Decimal("10000")

    def test_unlocked_milestone_has_no_current_baseline(self, team):
        m = factories.make_milestone(team.project)
        assert baseline_service.current_baseline(m.id) is None
        assert baseline_service.next_version_number(m.id) == 1

    def test_history_rows_are_immutable(self, team):
        m = factories.make_milestone(team.project, billable="10000")
        v1 = baseline_service.lock_original_baseline(m)
        db.session.commit()
        v1.baseline_billable = Decimal("99")
        with pytest.raises(RuntimeError, match="immutable"):
            db.session.flush()
        db.session.rollback()
        assert baseline_service.current_baseline(m.id).baseline_billable == Decimal("10000")
