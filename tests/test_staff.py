"""Tests for leave requests and the behavioral honor board."""

from __future__ import annotations

from datetime import date

import pytest

from school_config import week_of

STAGE = "الاول متوسط"


class TestWeekOf:
    def test_monday_start(self):
        week_id, start = week_of(date(2024, 5, 16))  # Thursday
        assert week_id == "week-20-2024"
        assert start == "2024-05-13T00:00:00"

    def test_same_week_same_id(self):
        assert week_of(date(2024, 5, 13))[0] == week_of(date(2024, 5, 19))[0]


@pytest.fixture
def leave(teacher_client):
    resp = teacher_client.post("/api/leave-requests", json={"requestBody": "إجازة يوم الأحد"})
    assert resp.status_code == 201
    return resp.get_json()["request"]


class TestLeaveRequests:
    def test_create_and_list(self, leave, teacher_client, other_teacher_client, principal_client):
        assert leave["status"] == "pending"
        assert teacher_client.get("/api/leave-requests").get_json()["pendingCount"] == 1
        assert other_teacher_client.get("/api/leave-requests").get_json()["requests"] == []
        assert principal_client.get("/api/leave-requests").get_json()["requests"][0]["id"] == leave["id"]

    def test_principal_cannot_request(self, principal_client):
        assert principal_client.post("/api/leave-requests", json={"requestBody": "x"}).status_code == 403

    def test_counselor_can_request(self, counselor_client):
        assert counselor_client.post("/api/leave-requests", json={"requestBody": "x"}).status_code == 201

    def test_edit_own_pending(self, leave, teacher_client, other_teacher_client):
        url = f"/api/leave-requests/{leave['id']}"
        assert other_teacher_client.put(url, json={"requestBody": "x"}).status_code == 403
        resp = teacher_client.put(url, json={"requestBody": "إجازة يومين"})
        assert resp.get_json()["request"]["requestBody"] == "إجازة يومين"

    def test_approve(self, leave, principal_client, teacher_client):
        resp = principal_client.post(f"/api/leave-requests/{leave['id']}/approve", json={"daysDeducted": 1})
        assert resp.status_code == 200
        approved = resp.get_json()["request"]
        assert approved["status"] == "approved"
        assert approved["approvalBody"] == "إجازة يوم الأحد"
        assert approved["daysDeducted"] == 1

        # resolved requests are frozen for the teacher
        url = f"/api/leave-requests/{leave['id']}"
        assert teacher_client.put(url, json={"requestBody": "x"}).status_code == 409
        assert teacher_client.delete(url).status_code == 409
        assert principal_client.delete(url).status_code == 200

    def test_negative_days_rejected(self, leave, principal_client):
        resp = principal_client.post(f"/api/leave-requests/{leave['id']}/approve", json={"daysDeducted": -1})
        assert resp.status_code == 400

    def test_reject_needs_reason(self, leave, principal_client):
        url = f"/api/leave-requests/{leave['id']}/reject"
        assert principal_client.post(url, json={}).status_code == 400
        resp = principal_client.post(url, json={"rejectionReason": "ضغط العمل"})
        assert resp.get_json()["request"]["status"] == "rejected"
        assert principal_client.post(url, json={"rejectionReason": "مرة أخرى"}).status_code == 409

    def test_teacher_cannot_approve(self, leave, teacher_client):
        assert teacher_client.post(f"/api/leave-requests/{leave['id']}/approve", json={}).status_code == 403

    def test_withdraw_pending(self, leave, teacher_client):
        assert teacher_client.delete(f"/api/leave-requests/{leave['id']}").status_code == 200
        assert teacher_client.get("/api/leave-requests").get_json()["requests"] == []


class TestHonorBoard:
    def _nominate(self, client, student_id="stu-1"):
        return client.post(f"/api/honor-board/{STAGE}/nominees", json={"studentId": student_id})

    def test_empty_board(self, principal_client):
        data = principal_client.get(f"/api/honor-board/{STAGE}").get_json()
        assert data["board"]["honoredStudents"] == {}
        assert "respect" in data["criteria"]

    def test_nominate_and_vote(self, teacher_client, other_teacher_client, student_client):
        assert self._nominate(teacher_client).status_code == 201
        assert self._nominate(teacher_client).status_code == 409

        url = f"/api/honor-board/{STAGE}/nominees/stu-1/vote"
        teacher_client.post(url, json={"criteriaKeys": ["respect", "respect", "discipline"]})
        other_teacher_client.post(url, json={"criteriaKeys": ["cleanliness"]})

        board = student_client.get(f"/api/honor-board/{STAGE}").get_json()["board"]
        votes = board["honoredStudents"]["stu-1"]["votes"]
        assert votes["teacher-1"]["criteriaKeys"] == ["respect", "discipline"]
        assert set(votes) == {"teacher-1", "teacher-2"}

    def test_unknown_criterion(self, teacher_client):
        self._nominate(teacher_client)
        resp = teacher_client.post(f"/api/honor-board/{STAGE}/nominees/stu-1/vote", json={"criteriaKeys": ["speed"]})
        assert resp.status_code == 400

    def test_withdraw_vote(self, teacher_client):
        self._nominate(teacher_client)
        url = f"/api/honor-board/{STAGE}/nominees/stu-1/vote"
        assert teacher_client.delete(url).status_code == 404
        teacher_client.post(url, json={"criteriaKeys": ["respect"]})
        assert teacher_client.delete(url).status_code == 200

    def test_vote_requires_nomination(self, teacher_client):
        resp = teacher_client.post(f"/api/honor-board/{STAGE}/nominees/stu-2/vote", json={"criteriaKeys": ["respect"]})
        assert resp.status_code == 404

    def test_wrong_stage(self, teacher_client):
        resp = teacher_client.post("/api/honor-board/الثاني متوسط/nominees", json={"studentId": "stu-1"})
        assert resp.status_code == 400
        assert teacher_client.get("/api/honor-board/غير موجود").status_code == 400

    def test_only_board_managers_remove(self, teacher_client, counselor_client):
        self._nominate(teacher_client)
        url = f"/api/honor-board/{STAGE}/nominees/stu-1"
        assert teacher_client.delete(url).status_code == 403
        assert counselor_client.delete(url).status_code == 200

    def test_student_limited_to_own_stage(self, student_client):
        assert student_client.get("/api/honor-board/الثاني متوسط").status_code == 403

    def test_past_week_lookup(self, principal_client):
        data = principal_client.get(f"/api/honor-board/{STAGE}?date=2024-05-16").get_json()
        assert data["board"]["id"] == "week-20-2024"
        assert principal_client.get(f"/api/honor-board/{STAGE}?date=16/05/2024").status_code == 400
