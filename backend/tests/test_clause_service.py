"""
Agreement clauses: point number uniqueness, max+1 sequence allocation and
transactional reordering.
"""
import pytest

from auth import RequestContext
from core.billing_errors import (
    BillingValidationError, ConcurrencyConflictError, InvalidStateError,
    PermissionDeniedError
)
from core import clause_service
from core.clause_service import ClauseService
from core.scope_lock import cas_update

AGREEMENT = "AGR-1"


@pytest.fixture
def service(client, db, run):
    service = ClauseService(client, db)
    run(service.create_indexes())
    return service


@pytest.fixture
def clauses(service, ctx, run):
    """P1, P2, P3 at sequence 1, 2, 3. Returns their ids in that order."""
    created = []
    for n in (1, 2, 3):
        doc = run(service.create_clause(ctx, {
            "agreement_id": AGREEMENT,
            "point_num": f"P{n}",
            "point_title": f"Clause {n}",
            "point_text": f"Text of clause {n}"
        }))
        created.append(str(doc["_id"]))
    return created


def _by_point(rows):
    return {c["point_num"]: c["sequence_no"] for c in rows}


class TestCreate:

    def test_sequence_is_max_plus_one(self, clauses, service, run):
        rows = run(service.list_clauses(AGREEMENT))
        assert _by_point(rows) == {"P1": 1, "P2": 2, "P3": 3}

    def test_duplicate_point_num_rejected(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.create_clause(ctx, {
                "agreement_id": AGREEMENT, "point_num": "P2", "point_title": "Copy"
            }))
        rows = run(service.list_clauses(AGREEMENT))
        assert len(rows) == 3
        assert [r["point_title"] for r in rows if r["point_num"] == "P2"] == ["Clause 2"]

    def test_same_point_num_on_other_agreement(self, clauses, service, ctx, run):
        doc = run(service.create_clause(ctx, {
            "agreement_id": "AGR-2", "point_num": "P1", "point_title": "Other"
        }))
        assert doc["sequence_no"] == 1

    def test_numbers_are_not_reused(self, clauses, service, ctx, run):
        run(service.update_clause(ctx, clauses[2], {"status": "Inactive"}))
        doc = run(service.create_clause(ctx, {
            "agreement_id": AGREEMENT, "point_num": "P4", "point_title": "Fourth"
        }))
        assert doc["sequence_no"] == 4

    @pytest.mark.parametrize("point_num", ["P3 ", " P3", "P3\t"])
    def test_padded_point_num_rejected(self, clauses, service, ctx, run, point_num):
        with pytest.raises(BillingValidationError) as exc:
            run(service.create_clause(ctx, {
                "agreement_id": AGREEMENT, "point_num": point_num, "point_title": "Padded"
            }))
        assert exc.value.details == {"point_num": point_num}
        assert len(run(service.list_clauses(AGREEMENT))) == 3

    def test_point_num_is_case_sensitive(self, clauses, service, ctx, run):
        doc = run(service.create_clause(ctx, {
            "agreement_id": AGREEMENT, "point_num": "p3", "point_title": "Lower case"
        }))
        assert doc["point_num"] == "p3"
        assert doc["sequence_no"] == 4

    def test_missing_title_rejected(self, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.create_clause(ctx, {"agreement_id": AGREEMENT, "point_num": "1", "point_title": " "}))

    def test_viewer_cannot_create(self, service, run):
        viewer = RequestContext(user_id="user-9", role="Viewer")
        with pytest.raises(PermissionDeniedError):
            run(service.create_clause(viewer, {
                "agreement_id": AGREEMENT, "point_num": "1", "point_title": "x"
            }))


class TestUpdate:

    def test_rename_to_existing_point_num_rejected(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.update_clause(ctx, clauses[0], {"point_num": "P3"}))

    def test_keeping_own_point_num_allowed(self, clauses, service, ctx, run):
        updated = run(service.update_clause(ctx, clauses[0], {"point_num": "P1", "point_title": "Renamed"}))
        assert updated["point_title"] == "Renamed"
        assert updated["version"] == 1

    def test_rename_with_padding_rejected(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.update_clause(ctx, clauses[0], {"point_num": "P1 "}))
        assert run(service.get_clause(clauses[0]))["point_num"] == "P1"

    def test_sequence_cannot_be_edited_directly(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.update_clause(ctx, clauses[0], {"sequence_no": 9}))

    def test_stale_version_conflicts(self, clauses, service, ctx, run):
        with pytest.raises(ConcurrencyConflictError):
            run(service.update_clause(ctx, clauses[0], {"point_title": "x"}, expected_version=3))


class TestReorder:

    def test_move_up_swaps_neighbours(self, clauses, service, ctx, run):
        rows = run(service.reorder(ctx, clauses[1], direction="up"))
        assert [r["point_num"] for r in rows] == ["P2", "P1", "P3"]
        assert _by_point(rows) == {"P1": 2, "P2": 1, "P3": 3}

    def test_boundaries(self, clauses, service, ctx, run):
        with pytest.raises(InvalidStateError):
            run(service.reorder(ctx, clauses[0], direction="up"))
        with pytest.raises(InvalidStateError):
            run(service.reorder(ctx, clauses[2], direction="down"))

    def test_bad_direction(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.reorder(ctx, clauses[0], direction="sideways"))

    def test_direction_or_number_required(self, clauses, service, ctx, run):
        with pytest.raises(BillingValidationError):
            run(service.reorder(ctx, clauses[0]))
        with pytest.raises(BillingValidationError):
            run(service.reorder(ctx, clauses[0], direction="up", new_sequence_no=2))

    def test_explicit_number_swaps_with_holder(self, clauses, service, ctx, run):
        rows = run(service.reorder(ctx, clauses[0], new_sequence_no=3))
        assert _by_point(rows) == {"P1": 3, "P2": 2, "P3": 1}

    def test_explicit_number_raises_high_water_mark(self, clauses, service, ctx, run):
        run(service.reorder(ctx, clauses[0], new_sequence_no=10))
        doc = run(service.create_clause(ctx, {
            "agreement_id": AGREEMENT, "point_num": "P4", "point_title": "Fourth"
        }))
        assert doc["sequence_no"] == 11

    def test_failed_second_write_rolls_back_first(self, clauses, service, ctx, run, monkeypatch):
        calls = []

        async def second_write_loses(collection, filter_query, expected_version, update, session=None):
            calls.append(filter_query)
            if len(calls) == 2:
                raise ConcurrencyConflictError("Record was modified by another request")
            return await cas_update(collection, filter_query, expected_version, update, session=session)

        monkeypatch.setattr(clause_service, "cas_update", second_write_loses)
        with pytest.raises(ConcurrencyConflictError):
            run(service.reorder(ctx, clauses[1], direction="up"))
        assert _by_point(run(service.list_clauses(AGREEMENT))) == {"P1": 1, "P2": 2, "P3": 3}


class TestList:

    def test_search_matches_title_and_text(self, clauses, service, run):
        assert [c["point_num"] for c in run(service.list_clauses(AGREEMENT, search="text of clause 2"))] == ["P2"]

    def test_status_filter(self, clauses, service, ctx, run):
        run(service.update_clause(ctx, clauses[0], {"status": "Inactive"}))
        assert [c["point_num"] for c in run(service.list_clauses(AGREEMENT, status="Active"))] == ["P2", "P3"]
