from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from aiohttp.test_utils import TestClient as AiohttpTestClient
from aiohttp.test_utils import TestServer as AiohttpTestServer

from cosigner.errors import (
    BundleModifiedError,
    ExpiryError,
    LedgerUnavailableError,
    PartialSequenceFailure,
    PositionSdkError,
)
from cosigner.operations import BuildResult, ConfirmResult
from cosigner.server import create_app


class ServerRoutesTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sequencer = AsyncMock()
        self.healthcheck = AsyncMock()
        app = create_app(
            logger=logging.getLogger("test.server"),
            sequencers={"fee_claim": self.sequencer},
            healthcheck=self.healthcheck,
        )
        self.client = AiohttpTestClient(AiohttpTestServer(app))
        await self.client.start_server()

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def test_build_returns_request_and_transactions(self) -> None:
        self.sequencer.build.return_value = BuildResult(
            request_id="abc",
            operation_type="fee_claim",
            resource_key="pool",
            transactions=("tx0",),
            metadata={"position": "p"},
        )

        response = await self.client.post("/fee_claim/build", json={"poolAddress": "Pool"})
        body = await response.json()

        self.assertEqual(response.status, 200)
        self.assertEqual(body["requestId"], "abc")
        self.assertEqual(body["transactions"], ["tx0"])
        self.sequencer.build.assert_awaited_once_with({"poolAddress": "Pool"})

    async def test_confirm_passes_request_id_and_bundles(self) -> None:
        self.sequencer.confirm.return_value = ConfirmResult(
            request_id="abc",
            operation_type="fee_claim",
            signatures=("s1",),
            unconfirmed_indexes=(),
            metadata={},
        )

        response = await self.client.post(
            "/fee_claim/confirm",
            json={"requestId": "abc", "signedTransactions": ["tx0"]},
        )

        self.assertEqual(response.status, 200)
        self.assertEqual((await response.json())["signatures"], ["s1"])
        self.sequencer.confirm.assert_awaited_once_with("abc", ["tx0"])

    async def test_operation_errors_map_to_status_and_kind(self) -> None:
        cases = [
            (BundleModifiedError("modified", bundle_index=1), 409, "tamper"),
            (ExpiryError("expired"), 410, "expiry"),
            (
                PartialSequenceFailure(
                    "partial",
                    failed_index=1,
                    applied_count=1,
                    total_count=3,
                    signatures=["s1"],
                    cause="boom",
                ),
                502,
                "partial_failure",
            ),
        ]
        for error, status, kind in cases:
            self.sequencer.confirm.side_effect = error
            response = await self.client.post(
                "/fee_claim/confirm",
                json={"requestId": "abc", "signedTransactions": ["tx0"]},
            )
            body = await response.json()
            self.assertEqual(response.status, status)
            self.assertEqual(body["kind"], kind)

        self.assertEqual(body["details"]["signatures"], ["s1"])

    async def test_upstream_failure_is_bad_gateway(self) -> None:
        self.sequencer.build.side_effect = PositionSdkError("sidecar down")

        response = await self.client.post("/fee_claim/build", json={})

        self.assertEqual(response.status, 502)
        self.assertEqual((await response.json())["kind"], "upstream")

        self.sequencer.build.side_effect = LedgerUnavailableError("rpc unreachable")
        response = await self.client.post("/fee_claim/build", json={})
        self.assertEqual(response.status, 502)
        self.assertEqual((await response.json())["kind"], "upstream")

    async def test_unexpected_error_hides_details(self) -> None:
        self.sequencer.build.side_effect = KeyError("secret")

        response = await self.client.post("/fee_claim/build", json={})
        body = await response.json()

        self.assertEqual(response.status, 500)
        self.assertEqual(body, {"kind": "internal", "error": "Internal server error"})

    async def test_invalid_json_is_a_validation_error(self) -> None:
        response = await self.client.post("/fee_claim/build", data="{not json")

        self.assertEqual(response.status, 400)
        self.assertEqual((await response.json())["kind"], "validation")

    async def test_unknown_operation_is_not_found(self) -> None:
        response = await self.client.post("/nope/build", json={})
        self.assertEqual(response.status, 404)

    async def test_health_reports_down_when_a_dependency_fails(self) -> None:
        response = await self.client.get("/health")
        self.assertEqual(response.status, 200)
        self.assertEqual((await response.json())["operations"], ["fee_claim"])

        self.healthcheck.side_effect = ConnectionError("redis gone")
        response = await self.client.get("/health")
        self.assertEqual(response.status, 503)


if __name__ == "__main__":
    unittest.main()
