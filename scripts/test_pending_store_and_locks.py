from __future__ import annotations

import asyncio
import unittest

from cosigner.errors import OperationNotFoundError
from cosigner.storage import InMemoryPendingOperationStore, InMemoryResourceLockManager, PendingOperation


def _make_operation(request_id: str = "req-1", *, created_at: float = 1_000.0) -> PendingOperation:
    return PendingOperation(
        request_id=request_id,
        operation_type="fee_claim",
        resource_key="pool",
        unsigned_bundles=("AAAA",),
        bundle_hashes=("00" * 32,),
        metadata={"position": "pos"},
        config_fingerprint="fp",
        custody_address="custody",
        cosigner_address="manager",
        created_at=created_at,
    )


class PendingOperationStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_put_get_delete(self) -> None:
        store = InMemoryPendingOperationStore()
        operation = _make_operation()

        await store.put(operation)
        self.assertEqual(await store.get("req-1"), operation)

        await store.delete("req-1")
        with self.assertRaises(OperationNotFoundError):
            await store.get("req-1")

    async def test_delete_missing_is_a_no_op(self) -> None:
        store = InMemoryPendingOperationStore()
        await store.delete("missing")
        self.assertEqual(len(store), 0)

    async def test_duplicate_request_id_is_refused(self) -> None:
        store = InMemoryPendingOperationStore()
        await store.put(_make_operation())
        with self.assertRaises(KeyError):
            await store.put(_make_operation())

    async def test_sweep_removes_only_old_entries(self) -> None:
        store = InMemoryPendingOperationStore()
        await store.put(_make_operation("old", created_at=0.0))
        await store.put(_make_operation("fresh", created_at=950.0))

        removed = await store.sweep(900.0, now=1_000.0)

        self.assertEqual(removed, 1)
        self.assertEqual((await store.get("fresh")).request_id, "fresh")
        with self.assertRaises(OperationNotFoundError):
            await store.get("old")

    def test_round_trip_through_dict(self) -> None:
        operation = _make_operation()
        self.assertEqual(PendingOperation.from_dict(operation.to_dict()), operation)

    def test_mismatched_bundles_and_hashes_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PendingOperation(
                request_id="r",
                operation_type="fee_claim",
                resource_key="pool",
                unsigned_bundles=("a", "b"),
                bundle_hashes=("h",),
                metadata={},
                config_fingerprint="fp",
                custody_address="c",
                cosigner_address="m",
            )

    def test_lock_key_is_scoped_to_operation_type(self) -> None:
        self.assertEqual(_make_operation().lock_key, "fee_claim:pool")


class InMemoryResourceLockManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_holders_of_one_key_never_overlap(self) -> None:
        locks = InMemoryResourceLockManager()
        active = 0
        peak = 0

        async def worker() -> None:
            nonlocal active, peak
            async with locks.hold("fee_claim:pool"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        self.assertEqual(peak, 1)
        self.assertEqual(locks.tracked_keys(), 0)

    async def test_distinct_keys_do_not_block_each_other(self) -> None:
        locks = InMemoryResourceLockManager()
        release = await locks.acquire("a")
        try:
            other = await asyncio.wait_for(locks.acquire("b"), timeout=0.5)
            await other()
        finally:
            await release()

    async def test_release_is_idempotent(self) -> None:
        locks = InMemoryResourceLockManager()
        release = await locks.acquire("a")
        self.assertTrue(locks.is_locked("a"))

        await release()
        await release()

        self.assertFalse(locks.is_locked("a"))
        self.assertEqual(locks.tracked_keys(), 0)

    async def test_cancelled_waiter_does_not_leak_the_key(self) -> None:
        locks = InMemoryResourceLockManager()
        release = await locks.acquire("a")

        waiter = asyncio.create_task(locks.acquire("a"))
        await asyncio.sleep(0)
        waiter.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await waiter

        await release()
        self.assertEqual(locks.tracked_keys(), 0)


if __name__ == "__main__":
    unittest.main()
