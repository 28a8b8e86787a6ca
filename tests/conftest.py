"""
Test fixtures for the school portal.

Every test gets a fresh file-based SQLite database seeded with one school:

* principal ``principal_user_01`` (code PRINCIPAL1)
* teacher ``teacher-1`` (code TEACHER1) teaching الرياضيات in ``class-1``
* teacher ``teacher-2`` (code TEACHER2) teaching العلوم in ``class-1``
* counselor ``counselor-1`` (code COUNSEL1)
* class ``class-1`` (الاول متوسط / أ) with students ``stu-1`` (code STUDENT1)
  and ``stu-2`` (code STUDENT2)

Gemini is mocked globally to avoid API calls during tests.
"""

from __future__ import annotations

import pytest
from unittest.mock import MagicMock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

PRINCIPAL_ID = "principal_user_01"
CLASS_ID = "class-1"
MATH_ID = "sub-math"
SCIENCE_ID = "sub-science"


@pytest.fixture(scope="session", autouse=True)
def mock_gemini():
    """Mock Google Generative AI globally to prevent API calls."""
    with patch.dict("sys.modules", {
        "google.generativeai": MagicMock(),
    }):
        yield


@pytest.fixture(autouse=True)
def reset_circuit_breaker():
    from ai_resilience import get_circuit_breaker
    get_circuit_breaker().reset()
    yield
    get_circuit_breaker().reset()


def _seed(tree) -> None:
    tree.update("", {
        f"users/{PRINCIPAL_ID}/studentCodeLimit": 50,
        "users/teacher-1": {
            "id": "teacher-1",
            "role": "teacher",
            "name": "أحمد جاسم",
            "principalId": PRINCIPAL_ID,
            "code": "TEACHER1",
            "assignments": [{"classId": CLASS_ID, "subjectId": MATH_ID}],
        },
        "users/teacher-2": {
            "id": "teacher-2",
            "role": "teacher",
            "name": "سارة علي",
            "principalId": PRINCIPAL_ID,
            "code": "TEACHER2",
            "assignments": [{"classId": CLASS_ID, "subjectId": SCIENCE_ID}],
        },
        "users/counselor-1": {
            "id": "counselor-1",
            "role": "counselor",
            "name": "مريم حسين",
            "principalId": PRINCIPAL_ID,
            "code": "COUNSEL1",
        },
        f"classes/{CLASS_ID}": {
            "id": CLASS_ID,
            "stage": "الاول متوسط",
            "section": "أ",
            "principalId": PRINCIPAL_ID,
            "subjects": [
                {"id": MATH_ID, "name": "الرياضيات"},
                {"id": SCIENCE_ID, "name": "العلوم"},
            ],
            "students": [
                {"id": "stu-1", "name": "علي حسن", "studentAccessCode": "STUDENT1"},
                {"id": "stu-2", "name": "زينب كريم", "studentAccessCode": "STUDENT2"},
            ],
        },
        "student_access_codes_individual/STUDENT1": {
            "studentId": "stu-1", "classId": CLASS_ID, "principalId": PRINCIPAL_ID, "disabled": False,
        },
        "student_access_codes_individual/STUDENT2": {
            "studentId": "stu-2", "classId": CLASS_ID, "principalId": PRINCIPAL_ID, "disabled": False,
        },
    })


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite and a temporary blob store."""
    from app import create_app

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "test.db"),
        "UPLOAD_DIR": str(tmp_path / "uploads"),
        "SECRET_KEY": "test-secret-key",
        "GOOGLE_API_KEY": "test-key",
        "ADMIN_LOGIN_CODE": "ADMIN-CODE",
        "PRINCIPAL_LOGIN_CODE": "PRINCIPAL1",
        "PRINCIPAL_ID": PRINCIPAL_ID,
        "PRINCIPAL_NAME": "مدير المدرسة",
        "SCHOOL_NAME": "ثانوية النور",
        "SCHOOL_LEVEL": "متوسطة",
    })

    with app.app_context():
        from auth import seed_bootstrap_principal
        from database import init_db, run_migrations
        from tree_store import get_tree

        init_db()
        run_migrations()
        seed_bootstrap_principal()
        _seed(get_tree())

    # Requests push their own app context, so Flask-Login state never leaks between clients
    yield app


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


def _login(app, path: str, code: str):
    client = app.test_client()
    resp = client.post(path, json={"code": code})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def principal_client(app):
    return _login(app, "/login", "PRINCIPAL1")


@pytest.fixture
def teacher_client(app):
    return _login(app, "/login", "TEACHER1")


@pytest.fixture
def other_teacher_client(app):
    return _login(app, "/login", "TEACHER2")


@pytest.fixture
def counselor_client(app):
    return _login(app, "/login", "COUNSEL1")


@pytest.fixture
def student_client(app):
    return _login(app, "/login/student", "STUDENT1")


@pytest.fixture
def other_student_client(app):
    return _login(app, "/login/student", "STUDENT2")


@pytest.fixture
def admin_client(app):
    return _login(app, "/login", "ADMIN-CODE")


class _TreeAccess:
    """Calls TreeStore methods inside a short-lived app context."""

    def __init__(self, app):
        self.app = app

    def __getattr__(self, name):
        def call(*args, **kwargs):
            from tree_store import get_tree
            with self.app.app_context():
                return getattr(get_tree(), name)(*args, **kwargs)
        return call


@pytest.fixture
def tree(app):
    """Direct record-tree access for setup and assertions."""
    return _TreeAccess(app)
