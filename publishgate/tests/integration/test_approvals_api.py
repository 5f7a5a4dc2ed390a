from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from publishgate.apps.api.main import create_app
from publishgate.services.governance.executors import CallbackExecutor, ExecutorRegistry
from publishgate.tests.utils.seed import create_user, list_audit_event_types, new_tenant_id, principal_headers


def _publish_registry(published: list[str]) -> ExecutorRegistry:
    async def _publish(session, context):
        published.append(context.target_id)
        return {"url": f"https://pages.example.com/{context.target_id}"}

    async def _unpublish(session, context):
        published.remove(context.target_id)
        return {"unpublished": context.target_id}

    return ExecutorRegistry({"artifact_publish": CallbackExecutor(_publish, _unpublish)})


@pytest.mark.asyncio
async def test_publish_waits_for_approval_then_executes_once() -> None:
    tenant_id = new_tenant_id("t-appr")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    requester_id = await create_user(tenant_id=tenant_id, role="member")
    approver_id = await create_user(tenant_id=tenant_id, role="member")
    outsider_id = await create_user(tenant_id=tenant_id, role="member")
    admin_headers = principal_headers(tenant_id=tenant_id, user_id=admin_id)
    requester_headers = principal_headers(tenant_id=tenant_id, user_id=requester_id)
    approver_headers = principal_headers(tenant_id=tenant_id, user_id=approver_id)
    outsider_headers = principal_headers(tenant_id=tenant_id, user_id=outsider_id)
    published: list[str] = []

    async with AsyncClient(
        transport=ASGITransport(app=create_app(executors=_publish_registry(published))), base_url="http://test"
    ) as client:
        grant = await client.post(
            "/v1/admin/permissions/grants",
            headers=admin_headers,
            json={"user_id": requester_id, "permission": "publish_landing_page"},
        )
        assert grant.status_code == 201
        steps = await client.put(
            "/v1/admin/governance/policy/steps",
            headers=admin_headers,
            json={"steps": [{"step_order": 1, "approver_scope_type": "user", "approver_scope_value": approver_id}]},
        )
        assert steps.status_code == 200

        submitted = await client.post(
            "/v1/approvals/actions",
            headers=requester_headers,
            json={
                "request_type": "artifact_publish",
                "target_type": "landing_page",
                "target_id": "lp-42",
                "payload": {"title": "Q3 launch"},
                "provenance": {"source": "crm_report"},
            },
        )
        assert submitted.status_code == 200
        data = submitted.json()["data"]
        assert data["outcome"] == "pending_approval"
        assert data["request"]["status"] == "pending"
        assert data["request"]["request_payload"]["title"] == "Q3 launch"
        request_id = data["request"]["id"]
        assert published == []

        detail = await client.get(f"/v1/approvals/{request_id}", headers=requester_headers)
        assert detail.json()["data"]["evaluation"]["current_step_order"] == 1
        assert detail.json()["data"]["evaluation"]["stuck"] is False
        assert (await client.get(f"/v1/approvals/{request_id}", headers=approver_headers)).status_code == 200
        hidden = await client.get(f"/v1/approvals/{request_id}", headers=outsider_headers)
        assert hidden.status_code == 403
        assert hidden.json()["error"] == {"code": "FORBIDDEN", "message": "Access denied"}
        assert (await client.get("/v1/approvals", headers=outsider_headers)).status_code == 403
        assert (await client.get("/v1/approvals", headers=requester_headers)).status_code == 403

        self_review = await client.post(
            f"/v1/approvals/{request_id}/review", headers=requester_headers, json={"decision": "approve"}
        )
        assert self_review.status_code == 403
        assert self_review.json()["error"] == {"code": "FORBIDDEN", "message": "Access denied"}

        approved = await client.post(
            f"/v1/approvals/{request_id}/review",
            headers=approver_headers,
            json={"decision": "approve", "notes": "looks good"},
        )
        assert approved.status_code == 200
        review = approved.json()["data"]
        assert review["executed"] is True
        assert review["request"]["status"] == "completed"
        assert review["request"]["execution_result"] == {"url": "https://pages.example.com/lp-42"}
        assert published == ["lp-42"]

        again = await client.post(
            f"/v1/approvals/{request_id}/review", headers=admin_headers, json={"decision": "approve"}
        )
        assert again.status_code == 409
        assert published == ["lp-42"]

        completed = await client.get("/v1/approvals?status=completed", headers=admin_headers)
        assert [item["id"] for item in completed.json()["data"]["items"]] == [request_id]

        rolled_back = await client.post(
            f"/v1/approvals/{request_id}/rollback", headers=admin_headers, json={"reason": "wrong audience"}
        )
        assert rolled_back.status_code == 200
        assert rolled_back.json()["data"]["status"] == "rolled_back"
        assert published == []

    events = await list_audit_event_types(tenant_id=tenant_id)
    assert "approval.requested" in events
    assert events.count("approval.completed") == 1
    assert "approval.rolled_back" in events


@pytest.mark.asyncio
async def test_stuck_requests_are_listed_for_permission_managers() -> None:
    tenant_id = new_tenant_id("t-appr")
    admin_id = await create_user(tenant_id=tenant_id, role="admin")
    admin_headers = principal_headers(tenant_id=tenant_id, user_id=admin_id)
    published: list[str] = []

    async with AsyncClient(
        transport=ASGITransport(app=create_app(executors=_publish_registry(published))), base_url="http://test"
    ) as client:
        await client.put(
            "/v1/admin/governance/policy/steps",
            headers=admin_headers,
            json={"steps": [{"step_order": 1, "approver_scope_type": "user", "approver_scope_value": admin_id}]},
        )
        submitted = await client.post(
            "/v1/approvals/actions",
            headers=admin_headers,
            json={
                "request_type": "artifact_publish",
                "target_type": "landing_page",
                "target_id": "lp-self",
                "provenance": {"source": "manual"},
            },
        )
        request_id = submitted.json()["data"]["request"]["id"]

        stuck = await client.get("/v1/approvals/stuck", headers=admin_headers)
        items = stuck.json()["data"]["items"]
        assert [item["request_id"] for item in items] == [request_id]
        assert items[0]["steps"][0]["stuck_reason"] == "self_approval_excluded"

        missing = await client.get("/v1/approvals/does-not-exist", headers=admin_headers)
        assert missing.status_code == 404
        bad_filter = await client.get("/v1/approvals?status=sideways", headers=admin_headers)
        assert bad_filter.status_code == 422
        unknown_field = await client.post(
            "/v1/approvals/actions",
            headers=admin_headers,
            json={"request_type": "artifact_publish", "target_type": "landing_page", "target_id": "x", "force": True},
        )
        assert unknown_field.status_code == 422
        assert unknown_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert published == []
