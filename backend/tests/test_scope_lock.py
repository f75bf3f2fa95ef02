"""
Single-writer guards: scope claims, version CAS and translation of MongoDB
transaction conflicts into ConcurrencyConflictError.
"""
import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from core.billing_errors import ConcurrencyConflictError
from core.scope_lock import ScopeLock, cas_update, is_write_conflict, storage_conflicts


async def _raise_inside(error):
    async with storage_conflicts("batch b-1"):
        raise error


class TestStorageConflicts:

    def test_write_conflict_code_maps_to_conflict(self, run):
        error = OperationFailure("WriteConflict", code=112)
        assert is_write_conflict(error)
        with pytest.raises(ConcurrencyConflictError) as exc:
            run(_raise_inside(error))
        assert exc.value.details == {"scope": "batch b-1"}

    def test_transient_transaction_label_maps_to_conflict(self, run):
        error = OperationFailure(
            "NoSuchTransaction", code=251, details={"errorLabels": ["TransientTransactionError"]}
        )
        assert error.has_error_label("TransientTransactionError")
        with pytest.raises(ConcurrencyConflictError):
            run(_raise_inside(error))

    def test_other_operation_failure_propagates(self, run):
        error = OperationFailure("not authorized", code=13)
        assert not is_write_conflict(error)
        with pytest.raises(OperationFailure) as exc:
            run(_raise_inside(error))
        assert exc.value.code == 13

    def test_duplicate_key_passes_through(self, run):
        with pytest.raises(DuplicateKeyError):
            run(_raise_inside(DuplicateKeyError("E11000 duplicate key", code=11000)))

    def test_clean_block_is_untouched(self, run):
        async def body():
            async with storage_conflicts("agreement AGR-1"):
                return "ok"

        assert run(body()) == "ok"


class TestScopeLock:

    def test_claims_bump_sequence_per_scope(self, db, run):
        locks = ScopeLock(db)
        assert run(locks.claim("BATCH", "b-1", "user-1")) == 1
        assert run(locks.claim("BATCH", "b-1", "user-2")) == 2
        assert run(locks.claim("BATCH", "b-2", "user-1")) == 1

        doc = run(db.scope_locks.find_one({"scope_type": "BATCH", "scope_id": "b-1"}))
        assert doc["claimed_by"] == "user-2"


class TestCasUpdate:

    def test_matching_version_applies_and_bumps(self, db, run):
        run(db.batch_items.insert_one({"_id": "item-1", "rate": 5, "version": 3}))
        run(cas_update(db.batch_items, {"_id": "item-1"}, 3, {"$set": {"rate": 6}}))

        doc = run(db.batch_items.find_one({"_id": "item-1"}))
        assert doc["rate"] == 6
        assert doc["version"] == 4

    def test_stale_version_conflicts_without_writing(self, db, run):
        run(db.batch_items.insert_one({"_id": "item-1", "rate": 5, "version": 3}))
        with pytest.raises(ConcurrencyConflictError):
            run(cas_update(db.batch_items, {"_id": "item-1"}, 2, {"$set": {"rate": 6}}))
        assert run(db.batch_items.find_one({"_id": "item-1"}))["rate"] == 5
