"""Tests for settings, staff accounts, principals, classes and grade sheets."""

from __future__ import annotations

import pytest


class TestSettings:
    def test_defaults_created_for_principal(self, principal_client, tree):
        resp = principal_client.get("/api/settings")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["settings"]["schoolName"] == "ثانوية النور"
        assert data["settings"]["academicYear"]
        assert data["gradeLevels"] == ["الاول متوسط", "الثاني متوسط", "الثالث متوسط"]
        assert tree.exists("settings/principal_user_01")

    def test_teacher_reads_without_creating(self, teacher_client, tree):
        assert teacher_client.get("/api/settings").status_code == 200
        assert not tree.exists("settings/principal_user_01")

    def test_update_mirrors_school_name_to_principal(self, principal_client, tree):
        resp = principal_client.put("/api/settings", json={"schoolName": "متوسطة الرافدين", "decisionPoints": 3})
        assert resp.status_code == 200
        assert tree.get("users/principal_user_01/schoolName") == "متوسطة الرافدين"
        assert tree.get("settings/principal_user_01/decisionPoints") == 3

    def test_unknown_field_rejected(self, principal_client):
        assert principal_client.put("/api/settings", json={"colour": "red"}).status_code == 400

    def test_invalid_level_rejected(self, principal_client):
        assert principal_client.put("/api/settings", json={"schoolLevel": "جامعة"}).status_code == 400

    def test_teacher_cannot_update(self, teacher_client):
        assert teacher_client.put("/api/settings", json={"schoolName": "x"}).status_code == 403


class TestStaffAccounts:
    def test_list_staff(self, principal_client):
        resp = principal_client.get("/api/users")
        ids = {u["id"] for u in resp.get_json()["users"]}
        assert ids == {"teacher-1", "teacher-2", "counselor-1"}

    def test_create_teacher_with_code(self, principal_client, client):
        resp = principal_client.post("/api/users", json={
            "name": "حيدر",
            "role": "teacher",
            "assignments": [{"classId": "class-1", "subjectId": "sub-math"}],
        })
        assert resp.status_code == 201
        user = resp.get_json()["user"]
        assert len(user["code"]) == 8
        assert client.post("/login", json={"code": user["code"]}).status_code == 200

    def test_assignment_must_reference_existing_subject(self, principal_client):
        resp = principal_client.post("/api/users", json={
            "name": "حيدر",
            "role": "teacher",
            "assignments": [{"classId": "class-1", "subjectId": "missing"}],
        })
        assert resp.status_code == 400

    def test_invalid_role(self, principal_client):
        assert principal_client.post("/api/users", json={"name": "x", "role": "principal"}).status_code == 400

    def test_counselor_has_no_assignments(self, principal_client):
        resp = principal_client.put("/api/users/teacher-1", json={"role": "counselor"})
        assert resp.status_code == 200
        assert "assignments" not in resp.get_json()["user"]

    def test_regenerate_code_invalidates_old(self, principal_client, client):
        resp = principal_client.post("/api/users/teacher-1/regenerate-code")
        new_code = resp.get_json()["code"]
        assert new_code != "TEACHER1"
        assert client.post("/login", json={"code": "TEACHER1"}).status_code == 401
        assert client.post("/login", json={"code": new_code}).status_code == 200

    def test_delete_staff(self, principal_client, tree):
        assert principal_client.delete("/api/users/counselor-1").status_code == 200
        assert not tree.exists("users/counselor-1")

    def test_teacher_cannot_manage_staff(self, teacher_client):
        assert teacher_client.get("/api/users").status_code == 403


class TestPrincipals:
    def test_admin_creates_principal(self, admin_client, client):
        resp = admin_client.post("/api/admin/principals", json={
            "name": "مدير ثانٍ", "schoolName": "اعدادية الكرخ", "schoolLevel": "اعدادي علمي",
        })
        assert resp.status_code == 201
        principal = resp.get_json()["principal"]
        assert principal["studentCodeLimit"] >= 0
        assert client.post("/login", json={"code": principal["code"]}).status_code == 200

    def test_admin_disables_principal(self, admin_client, client):
        resp = admin_client.put("/api/admin/principals/principal_user_01", json={"disabled": True})
        assert resp.status_code == 200
        assert client.post("/login", json={"code": "PRINCIPAL1"}).status_code == 403

    def test_principal_cannot_list_principals(self, principal_client):
        assert principal_client.get("/api/admin/principals").status_code == 403


class TestAuditTrail:
    def test_logins_are_recorded(self, admin_client, client):
        client.post("/login", json={"code": "WRONG-CODE"})
        events = admin_client.get("/api/admin/audit").get_json()["events"]
        actions = [e["action"] for e in events]
        assert "login_success" in actions
        assert "login_failed" in actions

    def test_admin_only(self, principal_client):
        assert principal_client.get("/api/admin/audit").status_code == 403


class TestClasses:
    def test_create_class(self, principal_client):
        resp = principal_client.post("/api/classes", json={
            "stage": "الثاني متوسط", "section": "ب", "subjects": ["الرياضيات", "الرياضيات", "اللغة العربية"],
        })
        assert resp.status_code == 201
        cls = resp.get_json()["class"]
        assert [s["name"] for s in cls["subjects"]] == ["الرياضيات", "اللغة العربية"]

    def test_duplicate_class_conflict(self, principal_client):
        resp = principal_client.post("/api/classes", json={"stage": "الاول متوسط", "section": "أ"})
        assert resp.status_code == 409

    def test_unknown_stage(self, principal_client):
        assert principal_client.post("/api/classes", json={"stage": "x", "section": "أ"}).status_code == 400

    def test_classes_sorted_by_stage(self, principal_client):
        principal_client.post("/api/classes", json={"stage": "الثالث متوسط", "section": "أ"})
        principal_client.post("/api/classes", json={"stage": "الثاني متوسط", "section": "أ"})
        stages = [c["stage"] for c in principal_client.get("/api/classes").get_json()["classes"]]
        assert stages == ["الاول متوسط", "الثاني متوسط", "الثالث متوسط"]

    def test_teacher_sees_only_assigned_classes(self, principal_client, teacher_client):
        principal_client.post("/api/classes", json={"stage": "الثاني متوسط", "section": "أ"})
        classes = teacher_client.get("/api/classes").get_json()["classes"]
        assert [c["id"] for c in classes] == ["class-1"]

    def test_teacher_cannot_open_unassigned_class(self, principal_client, teacher_client):
        cid = principal_client.post(
            "/api/classes", json={"stage": "الثاني متوسط", "section": "أ"}
        ).get_json()["class"]["id"]
        assert teacher_client.get(f"/api/classes/{cid}").status_code == 403

    def test_student_cannot_list_classes(self, student_client):
        assert student_client.get("/api/classes").status_code == 403

    def test_delete_class_cleans_up(self, principal_client, tree):
        assert principal_client.delete("/api/classes/class-1").status_code == 200
        assert not tree.exists("classes/class-1")
        assert tree.get("users/teacher-1/assignments") is None
        assert not tree.exists("student_access_codes_individual/STUDENT1")

    def test_remove_subject_strips_assignments(self, principal_client, tree):
        assert principal_client.delete("/api/classes/class-1/subjects/sub-science").status_code == 200
        assert tree.get("users/teacher-2/assignments") is None
        assert tree.get("users/teacher-1/assignments") == [{"classId": "class-1", "subjectId": "sub-math"}]

    def test_add_duplicate_subject(self, principal_client):
        resp = principal_client.post("/api/classes/class-1/subjects", json={"name": "العلوم"})
        assert resp.status_code == 409

    @pytest.mark.parametrize("name", ["English 2.0", "الفيزياء/الكيمياء", "C#", "[اختياري]"])
    def test_subject_name_must_be_usable_as_key(self, principal_client, tree, name):
        resp = principal_client.post("/api/classes/class-1/subjects", json={"name": name})
        assert resp.status_code == 400
        assert name not in [s["name"] for s in tree.get("classes/class-1/subjects")]

    def test_new_class_rejects_unusable_subject_names(self, principal_client):
        before = len(principal_client.get("/api/classes").get_json()["classes"])
        resp = principal_client.post("/api/classes", json={
            "stage": "الثاني متوسط", "section": "ب", "subjects": ["الرياضيات", "English 2.0"],
        })
        assert resp.status_code == 400
        assert len(principal_client.get("/api/classes").get_json()["classes"]) == before

    def test_other_principals_class_is_hidden(self, admin_client, client):
        code = admin_client.post("/api/admin/principals", json={
            "name": "مدير آخر", "schoolName": "مدرسة أخرى", "schoolLevel": "متوسطة",
        }).get_json()["principal"]["code"]
        other = client
        other.post("/login", json={"code": code})
        assert other.get("/api/classes/class-1").status_code == 404


class TestStudents:
    def test_add_and_update_student(self, principal_client, tree):
        resp = principal_client.post("/api/classes/class-1/students", json={"name": "حسن", "examId": "77"})
        assert resp.status_code == 201
        sid = resp.get_json()["student"]["id"]
        resp = principal_client.put(f"/api/classes/class-1/students/{sid}", json={"name": "حسن علي"})
        assert resp.get_json()["student"]["name"] == "حسن علي"
        names = [s["name"] for s in tree.get("classes/class-1/students")]
        assert names == ["علي حسن", "زينب كريم", "حسن علي"]

    def test_remove_student_revokes_code(self, principal_client, tree):
        assert principal_client.delete("/api/classes/class-1/students/stu-1").status_code == 200
        assert not tree.exists("student_access_codes_individual/STUDENT1")

    def test_unknown_student(self, principal_client):
        assert principal_client.put("/api/classes/class-1/students/nobody", json={"name": "x"}).status_code == 404


class TestGrades:
    def test_teacher_saves_own_sheet(self, teacher_client, tree):
        resp = teacher_client.put("/api/classes/class-1/subjects/sub-math/grades", json={
            "grades": {"stu-1": {"firstSemMonth1": 85, "midYear": 70}},
        })
        assert resp.status_code == 200
        student = tree.get("classes/class-1/students/0")
        assert student["teacherGrades"]["الرياضيات"] == {"firstSemMonth1": 85, "midYear": 70}
        assert "grades" not in student

    def test_principal_saves_official_sheet(self, principal_client, tree):
        resp = principal_client.put("/api/classes/class-1/subjects/sub-science/grades", json={
            "grades": {"stu-2": {"firstTerm": 55}},
        })
        assert resp.status_code == 200
        assert tree.get("classes/class-1/students/1/grades/العلوم/firstTerm") == 55

    def test_grades_merge_and_null_clears(self, teacher_client, tree):
        url = "/api/classes/class-1/subjects/sub-math/grades"
        teacher_client.put(url, json={"grades": {"stu-1": {"midYear": 70, "finalExam": 90}}})
        teacher_client.put(url, json={"grades": {"stu-1": {"midYear": None}}})
        assert tree.get("classes/class-1/students/0/teacherGrades/الرياضيات") == {"finalExam": 90}

    def test_out_of_range_grade(self, teacher_client):
        resp = teacher_client.put("/api/classes/class-1/subjects/sub-math/grades", json={
            "grades": {"stu-1": {"midYear": 120}},
        })
        assert resp.status_code == 400

    def test_principal_field_refused_for_teacher(self, teacher_client):
        resp = teacher_client.put("/api/classes/class-1/subjects/sub-math/grades", json={
            "grades": {"stu-1": {"firstTerm": 50}},
        })
        assert resp.status_code == 400

    def test_teacher_cannot_grade_unassigned_subject(self, teacher_client):
        resp = teacher_client.put("/api/classes/class-1/subjects/sub-science/grades", json={
            "grades": {"stu-1": {"midYear": 50}},
        })
        assert resp.status_code == 403

    def test_counselor_cannot_grade(self, counselor_client):
        resp = counselor_client.put("/api/classes/class-1/subjects/sub-math/grades", json={
            "grades": {"stu-1": {"firstTerm": 50}},
        })
        assert resp.status_code == 403

    def test_submit_sheet_to_principal(self, teacher_client, principal_client):
        teacher_client.put("/api/classes/class-1/subjects/sub-math/grades", json={
            "grades": {"stu-1": {"midYear": 66}},
        })
        resp = teacher_client.post("/api/classes/class-1/subjects/sub-math/submit-grades")
        assert resp.status_code == 201
        submissions = principal_client.get("/api/teacher-submissions").get_json()["submissions"]
        assert len(submissions) == 1
        assert submissions[0]["grades"]["stu-1"] == {"midYear": 66}
        sid = submissions[0]["id"]
        assert principal_client.delete(f"/api/teacher-submissions/{sid}").status_code == 200
        assert principal_client.get("/api/teacher-submissions").get_json()["submissions"] == []
