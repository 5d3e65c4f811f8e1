"""Integration tests for the flag and approval endpoints.

Uses InMemoryExpenseRepository on app.state with the expenses router
mounted on a bare FastAPI app.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import InMemoryExpenseRepository
from src.expense_sync.api.v1.expenses import router
from src.expense_sync.expenses.schemas import FLAG_CATEGORIES


def _make_mock_app(repo: InMemoryExpenseRepository) -> FastAPI:
    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.state.expense_repository = repo
    return app


@pytest_asyncio.fixture
async def client_and_repo():
    repo = InMemoryExpenseRepository()
    app = _make_mock_app(repo)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac, repo


# ── Flags ────────────────────────────────────────────────────────────────────


class TestFlagEndpoint:
    """PATCH /expenses/flag."""

    @pytest.mark.asyncio
    async def test_set_flag(self, client_and_repo) -> None:
        client, repo = client_and_repo
        row = repo.seed("100")

        response = await client.patch(
            "/api/v1/expenses/flag",
            json={"expenseId": row.id, "flagCategory": "Wrong Department"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["expense"]["flag_category"] == "Wrong Department"
        assert (await repo.get(row.id)).flag_category == "Wrong Department"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cleared", [None, ""])
    async def test_clear_flag(self, client_and_repo, cleared) -> None:
        client, repo = client_and_repo
        row = repo.seed("100", flag_category="Personal")

        response = await client.patch(
            "/api/v1/expenses/flag",
            json={"expenseId": row.id, "flagCategory": cleared},
        )

        assert response.status_code == 200
        assert (await repo.get(row.id)).flag_category is None

    @pytest.mark.asyncio
    async def test_missing_expense_id(self, client_and_repo) -> None:
        client, _ = client_and_repo
        response = await client.patch("/api/v1/expenses/flag", json={"flagCategory": "Personal"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_expense_id(self, client_and_repo) -> None:
        client, _ = client_and_repo
        response = await client.patch(
            "/api/v1/expenses/flag",
            json={"expenseId": "not-a-uuid", "flagCategory": "Personal"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_expense(self, client_and_repo) -> None:
        client, _ = client_and_repo
        response = await client.patch(
            "/api/v1/expenses/flag",
            json={"expenseId": str(uuid.uuid4()), "flagCategory": "Personal"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_flag_categories(self, client_and_repo) -> None:
        client, _ = client_and_repo
        response = await client.get("/api/v1/expenses/flag-categories")
        assert response.json()["categories"] == list(FLAG_CATEGORIES)


# ── Approval ─────────────────────────────────────────────────────────────────


class TestApprovalEndpoint:
    """PATCH /expenses/approval."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision", ["approved", "rejected"])
    async def test_set_decision(self, client_and_repo, decision) -> None:
        client, repo = client_and_repo
        row = repo.seed("100")

        response = await client.patch(
            "/api/v1/expenses/approval",
            json={"expenseId": row.id, "approvalStatus": decision, "modifiedBy": "ops@example.com"},
        )

        assert response.status_code == 200
        expense = response.json()["expense"]
        assert expense["approval_status"] == decision
        assert expense["approval_modified_by"] == "ops@example.com"
        assert expense["approval_modified_at"] is not None

    @pytest.mark.asyncio
    async def test_clear_decision(self, client_and_repo) -> None:
        client, repo = client_and_repo
        row = repo.seed("100", approval_status="approved")

        response = await client.patch(
            "/api/v1/expenses/approval",
            json={"expenseId": row.id, "approvalStatus": None},
        )

        assert response.status_code == 200
        assert (await repo.get(row.id)).approval_status is None

    @pytest.mark.asyncio
    async def test_invalid_decision(self, client_and_repo) -> None:
        client, repo = client_and_repo
        row = repo.seed("100")

        response = await client.patch(
            "/api/v1/expenses/approval",
            json={"expenseId": row.id, "approvalStatus": "maybe"},
        )

        assert response.status_code == 400
        assert (await repo.get(row.id)).approval_status is None

    @pytest.mark.asyncio
    async def test_missing_decision_key(self, client_and_repo) -> None:
        client, repo = client_and_repo
        row = repo.seed("100")

        response = await client.patch("/api/v1/expenses/approval", json={"expenseId": row.id})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_expense(self, client_and_repo) -> None:
        client, _ = client_and_repo
        response = await client.patch(
            "/api/v1/expenses/approval",
            json={"expenseId": str(uuid.uuid4()), "approvalStatus": "approved"},
        )
        assert response.status_code == 404
