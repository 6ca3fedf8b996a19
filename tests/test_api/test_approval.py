"""
Tests for the approval API endpoints.
"""
import json
import uuid
from typing import Any, Dict, Optional

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from conftest import PDF_BYTES, REVIEW_CHAT_ID, WEBHOOK_SECRET


class TestApprovalQueries:
    """Reading approvals and previews."""

    def test_get_approval(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.get(f"{api_prefix}/approvals/{pending_approval_id}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["approval_id"] == pending_approval_id
        assert data["task_id"] == "task-1"
        assert data["state"] == "pending_approval"
        assert data["iteration"] == 1
        assert data["has_pdf"] is True
        assert data["is_terminal"] is False

    def test_get_unknown_approval(self, client: TestClient, api_prefix: str):
        response = client.get(f"{api_prefix}/approvals/does-not-exist")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["error_code"] == "ORC_107"

    def test_pending_queue(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.get(f"{api_prefix}/approvals/pending")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total_count"] == 1
        item = data["pending_approvals"][0]
        assert item["approval_id"] == pending_approval_id
        assert item["recipient_name"] == "Erika Mustermann"
        assert item["has_address"] is True
        assert item["waiting_time_hours"] >= 0

    def test_empty_pending_queue(self, client: TestClient, api_prefix: str):
        response = client.get(f"{api_prefix}/approvals/pending")

        assert response.json() == {"pending_approvals": [], "total_count": 0}

    def test_download_pdf(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.get(f"{api_prefix}/approvals/{pending_approval_id}/pdf")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "application/pdf"
        assert response.content == PDF_BYTES

    def test_regenerate_pdf(self, client: TestClient, api_prefix: str, pending_approval_id: str, renderer):
        response = client.post(f"{api_prefix}/approvals/{pending_approval_id}/regenerate-pdf")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["has_pdf"] is True
        assert len(renderer.calls) == 2


class TestDecisionEndpoint:
    """Reviewer decisions over REST."""

    def test_approve_delivers(self, client: TestClient, api_prefix: str, pending_approval_id: str, carrier, crm):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "approve", "decided_by": "reviewer"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "approved"
        assert data["tracking_id"] == "JOB-1"
        assert data["completed_at"] is not None
        assert data["is_terminal"] is True
        assert len(carrier.calls) == 1
        assert crm.statuses_for("task-1")[-1] == "Abgeschlossen"

    def test_reject(self, client: TestClient, api_prefix: str, pending_approval_id: str, carrier):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "reject", "feedback": "Falscher Ton"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "rejected"
        assert response.json()["error"] == {"reason": "Falscher Ton"}
        assert carrier.calls == []

    def test_revise(self, client: TestClient, api_prefix: str, pending_approval_id: str, channel):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "revise", "feedback": "shorter please"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "pending_approval"
        assert data["iteration"] == 2
        assert data["letter_history"][0]["feedback"] == "shorter please"
        assert len(channel.approval_requests) == 2

    def test_revise_without_feedback(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "revise", "feedback": "  "},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["error_code"] == "MISSING_FEEDBACK"

    def test_invalid_decision_value(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "maybe"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_decision_on_unknown_approval(self, client: TestClient, api_prefix: str):
        response = client.post(f"{api_prefix}/approvals/missing/decision", json={"decision": "approve"})

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_second_decision_conflicts(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        url = f"{api_prefix}/approvals/{pending_approval_id}/decision"
        client.post(url, json={"decision": "reject"})

        response = client.post(url, json={"decision": "approve"})

        assert response.status_code == status.HTTP_409_CONFLICT
        detail = response.json()["detail"]
        assert detail["error_code"] == "ORC_105"
        assert detail["message"] == "The approval is not in a state that allows this action."

    def test_delivery_failure_is_bad_gateway(
        self, client: TestClient, api_prefix: str, pending_approval_id: str, carrier
    ):
        from app.core.exceptions import TransientAdapterError

        carrier.error = TransientAdapterError("LetterExpress", "HTTP 503", status_code=503)

        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/decision",
            json={"decision": "approve"},
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["detail"]["error_code"] == "ORC_106"


class TestCancelEndpoint:
    def test_cancel_pending(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        response = client.post(
            f"{api_prefix}/approvals/{pending_approval_id}/cancel",
            json={"reason": "Kunde hat abgesagt", "cancelled_by": "ops"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "rejected"
        assert response.json()["decided_by"] == "ops"

    def test_cancel_terminal_conflicts(self, client: TestClient, api_prefix: str, pending_approval_id: str):
        url = f"{api_prefix}/approvals/{pending_approval_id}/cancel"
        client.post(url, json={})

        response = client.post(url, json={})

        assert response.status_code == status.HTTP_409_CONFLICT


def _state(client: TestClient, api_prefix: str, approval_id: str) -> str:
    return client.get(f"{api_prefix}/approvals/{approval_id}").json()["state"]


def _from_review_chat(update: Dict[str, Any], chat_id: str = REVIEW_CHAT_ID) -> Dict[str, Any]:
    """Attach the chat Telegram reports for a button press or a typed message."""
    message = update["callback_query"].setdefault("message", {}) if "callback_query" in update else update["message"]
    message["chat"] = {"id": int(chat_id)}
    return update


class TestTelegramWebhook:
    """Decisions arriving from the approval chat."""

    def _post(self, client: TestClient, api_prefix: str, update: Dict[str, Any], secret: Optional[str] = WEBHOOK_SECRET):
        headers = {"X-Telegram-Bot-Api-Secret-Token": secret} if secret is not None else {}
        return client.post(f"{api_prefix}/telegram/webhook", json=update, headers=headers)

    def test_approve_button(self, client: TestClient, api_prefix: str, pending_approval_id: str, channel):
        update = _from_review_chat({
            "update_id": 1,
            "callback_query": {
                "id": "cb-1",
                "data": f"approve_{pending_approval_id}",
                "from": {"id": 5, "username": "reviewer"},
            },
        })

        response = self._post(client, api_prefix, update)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ok"] is True
        assert data["handled"] is True
        assert data["decision"] == "approve"
        assert data["message"] == "approved"
        assert channel.callback_answers == [("cb-1", "Entscheidung erhalten")]

    def test_change_button_asks_for_feedback(
        self, client: TestClient, api_prefix: str, pending_approval_id: str, channel, letters
    ):
        update = _from_review_chat({"callback_query": {"id": "cb-2", "data": f"change_{pending_approval_id}"}})

        response = self._post(client, api_prefix, update)

        assert response.json()["message"] == "Feedback requested"
        assert f"/revise {pending_approval_id}" in channel.messages[-1]
        assert letters.revise_calls == []

    def test_revise_command(self, client: TestClient, api_prefix: str, pending_approval_id: str, letters):
        update = _from_review_chat(
            {"message": {"text": f"/revise {pending_approval_id} Bitte kürzer", "from": {"id": 5}}}
        )

        response = self._post(client, api_prefix, update)

        assert response.json()["message"] == "pending_approval"
        assert letters.revise_calls == [(pending_approval_id, "Bitte kürzer")]

    def test_unrelated_update_ignored(self, client: TestClient, api_prefix: str):
        response = self._post(client, api_prefix, _from_review_chat({"message": {"text": "Hallo"}}))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["handled"] is False

    def test_failed_decision_still_answers_ok(self, client: TestClient, api_prefix: str):
        update = _from_review_chat({"callback_query": {"data": f"approve_{uuid.uuid4()}"}})

        response = self._post(client, api_prefix, update)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ok"] is False
        assert data["message"].startswith("ORC_107")

    def test_path_like_id_is_not_a_decision(
        self, client: TestClient, api_prefix: str, pending_approval_id: str
    ):
        update = _from_review_chat({"message": {"text": f"/revise ../archive/{pending_approval_id} kürzer"}})

        response = self._post(client, api_prefix, update)

        assert response.json()["handled"] is False
        assert _state(client, api_prefix, pending_approval_id) == "pending_approval"

    @pytest.mark.parametrize("secret", [None, "", "wrong-secret"])
    def test_wrong_secret_rejected(
        self, client: TestClient, api_prefix: str, pending_approval_id: str, secret
    ):
        update = _from_review_chat({"callback_query": {"id": "cb-3", "data": f"approve_{pending_approval_id}"}})

        response = self._post(client, api_prefix, update, secret=secret)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["detail"]["error_code"] == "INVALID_WEBHOOK_SECRET"
        assert _state(client, api_prefix, pending_approval_id) == "pending_approval"

    @pytest.mark.parametrize(
        "update",
        [
            {"callback_query": {"id": "cb-4", "data": "approve_{id}", "message": {"chat": {"id": 999}}}},
            {"callback_query": {"id": "cb-4", "data": "approve_{id}"}},
            {"message": {"text": "/revise {id} Bitte kürzer", "chat": {"id": 999}}},
        ],
    )
    def test_foreign_chat_ignored(
        self, client: TestClient, api_prefix: str, pending_approval_id: str, letters, channel, update
    ):
        payload = json.loads(json.dumps(update).replace("{id}", pending_approval_id))

        response = self._post(client, api_prefix, payload)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["handled"] is False
        assert _state(client, api_prefix, pending_approval_id) == "pending_approval"
        assert letters.revise_calls == []
        assert channel.callback_answers == []
