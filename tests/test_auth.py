"""Tests for access-code login, sessions and registration codes."""

from __future__ import annotations


class TestStaffLogin:
    def test_principal_login(self, client):
        resp = client.post("/login", json={"code": "PRINCIPAL1"})
        assert resp.status_code == 200
        user = resp.get_json()["user"]
        assert user["role"] == "principal"
        assert user["principalId"] == "principal_user_01"
        assert user["schoolName"] == "ثانوية النور"

    def test_teacher_login_includes_assignments(self, client):
        resp = client.post("/login", json={"code": "TEACHER1"})
        assert resp.status_code == 200
        user = resp.get_json()["user"]
        assert user["role"] == "teacher"
        assert user["assignments"] == [{"classId": "class-1", "subjectId": "sub-math"}]

    def test_admin_login(self, client):
        resp = client.post("/login", json={"code": "ADMIN-CODE"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["role"] == "admin"

    def test_unknown_code(self, client):
        resp = client.post("/login", json={"code": "NOPE"})
        assert resp.status_code == 401
        assert "error" in resp.get_json()

    def test_missing_code(self, client):
        assert client.post("/login", json={}).status_code == 400

    def test_disabled_staff_refused(self, client, tree):
        tree.set("users/teacher-1/disabled", True)
        assert client.post("/login", json={"code": "TEACHER1"}).status_code == 403

    def test_staff_of_disabled_principal_refused(self, client, tree):
        tree.set("users/principal_user_01/disabled", True)
        assert client.post("/login", json={"code": "TEACHER1"}).status_code == 403

    def test_student_code_does_not_work_for_staff_login(self, client):
        assert client.post("/login", json={"code": "STUDENT1"}).status_code == 401


class TestStudentLogin:
    def test_student_login(self, client):
        resp = client.post("/login/student", json={"code": "STUDENT1"})
        assert resp.status_code == 200
        user = resp.get_json()["user"]
        assert user == {
            "id": "stu-1",
            "role": "student",
            "name": "علي حسن",
            "principalId": "principal_user_01",
            "classId": "class-1",
            "section": "أ",
            "stage": "الاول متوسط",
        }

    def test_disabled_code_refused(self, client, tree):
        tree.set("student_access_codes_individual/STUDENT1/disabled", True)
        assert client.post("/login/student", json={"code": "STUDENT1"}).status_code == 401

    def test_removed_student_refused(self, client, tree):
        tree.set("classes/class-1/students", [{"id": "stu-2", "name": "زينب كريم"}])
        assert client.post("/login/student", json={"code": "STUDENT1"}).status_code == 401


class TestSession:
    def test_me_requires_login(self, client):
        assert client.get("/me").status_code == 401

    def test_me_returns_current_user(self, teacher_client):
        resp = teacher_client.get("/me")
        assert resp.status_code == 200
        assert resp.get_json()["user"]["id"] == "teacher-1"

    def test_disabling_ends_session(self, teacher_client, tree):
        tree.set("users/teacher-1/disabled", True)
        assert teacher_client.get("/me").status_code == 401

    def test_disabling_student_code_ends_session(self, student_client, tree):
        tree.set("student_access_codes_individual/STUDENT1/disabled", True)
        assert student_client.get("/me").status_code == 401

    def test_logout(self, principal_client):
        assert principal_client.post("/logout").status_code == 200
        assert principal_client.get("/me").status_code == 401


class TestRegistrationCode:
    def test_matching_code(self, client, tree):
        tree.set("student_access_codes/principal_user_01/الاول متوسط", "REG123")
        resp = client.post("/registration/check-code", json={"code": "reg123"})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["principalId"] == "principal_user_01"
        assert data["stage"] == "الاول متوسط"

    def test_unknown_code(self, client):
        resp = client.post("/registration/check-code", json={"code": "XYZ"})
        assert resp.status_code == 404
        assert resp.get_json()["success"] is False


class TestAudit:
    def test_logins_are_audited(self, client, admin_client):
        client.post("/login", json={"code": "NOPE"})
        resp = admin_client.get("/api/admin/audit")
        assert resp.status_code == 200
        actions = {e["action"] for e in resp.get_json()["events"]}
        assert {"login_failed", "login_success"} <= actions
