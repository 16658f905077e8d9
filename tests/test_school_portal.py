import json

import pytest

import portal_logs
import school_portal
from conftest import make_student, make_teacher


def login(client, username, password="pw", role="student"):
    return client.post("/login", json={"username": username, "password": password, "role": role})


@pytest.fixture
def dm(client):
    return school_portal.portal


@pytest.fixture
def school(dm):
    """One complete teacher with one assigned student."""
    teacher = make_teacher(dm, "mrs_h", "Mrs Hudson")
    student = make_student(dm, "amy", "Amy Pond")
    return teacher, student


def test_login_checks_role_and_hides_password(client, school):
    assert login(client, "amy", role="teacher").status_code == 401
    resp = login(client, "amy")
    assert resp.status_code == 200
    assert "password" not in resp.get_json()
    assert any(e["action"] == "Logged in" for e in portal_logs.load_logs_file())


def test_endpoints_require_login(client):
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/student/dashboard").status_code == 401


def test_role_required(client, school):
    login(client, "amy")
    assert client.get("/api/admin/dashboard").status_code == 403
    assert client.get("/api/teacher/dashboard").status_code == 403


def test_signup_then_profile_assigns_teacher(client, school, dm):
    teacher, _ = school
    resp = client.post("/signup", json={"username": "clara", "password": "pw", "role": "student"})
    assert resp.status_code == 201
    assert client.post("/signup", json={"username": "clara", "password": "x", "role": "student"}).status_code == 400
    assert client.post("/signup", json={"username": "boss", "password": "x", "role": "admin"}).status_code == 403
    resp = client.put("/api/student/profile", json={"name": "Clara Oswald", "class": "8B"})
    assert resp.get_json()["assignedTeacher"] == teacher["id"]


def test_student_dashboard(client, school, dm):
    teacher, student = school
    dm.add_notice(teacher["id"], {"title": "Trip", "content": "Zoo"})
    dm.add_grade(student["id"], "Math", 18, 20)
    dm.mark_attendance(student["id"], "2024-03-01", "present")
    login(client, "amy")
    data = client.get("/api/student/dashboard").get_json()
    assert data["teacher"] == "Mrs Hudson"
    assert data["notices"][0]["title"] == "Trip"
    assert data["averageGrade"] == 90
    assert data["letterGrade"] == "A"
    assert data["attendance"]["percentage"] == 100
    assert "password" not in data["student"]

    grades = client.get("/api/student/grades?subject=math").get_json()
    assert grades["average"] == 90
    att = client.get("/api/student/attendance?start=2024-03-01&end=2024-03-31").get_json()
    assert [r["date"] for r in att["records"]] == ["2024-03-01"]


def test_teacher_records_progress_attendance_and_grades(client, school, dm):
    _, student = school
    login(client, "mrs_h", role="teacher")
    dash = client.get("/api/teacher/dashboard").get_json()
    assert [s["id"] for s in dash["students"]] == [student["id"]]

    sid = student["id"]
    resp = client.post(f"/api/teacher/students/{sid}/progress", json={"math": "88", "behavior": "Good"})
    assert resp.status_code == 201
    report_id = resp.get_json()["id"]
    assert client.put(f"/api/progress/{report_id}", json={"remarks": "Keep going"}).get_json()["remarks"] == "Keep going"

    assert client.post(f"/api/teacher/students/{sid}/attendance",
                       json={"date": "2024-03-04", "status": "late"}).status_code == 201
    assert client.post(f"/api/teacher/students/{sid}/attendance",
                       json={"date": "2024-03-04", "status": "asleep"}).status_code == 400
    assert client.post(f"/api/teacher/students/{sid}/grades",
                       json={"subject": "Math", "grade": 40, "maxGrade": 50, "gradeType": "exam"}).status_code == 201
    assert client.post(f"/api/teacher/students/{sid}/grades",
                       json={"subject": "Math", "grade": 40, "maxGrade": 0}).status_code == 400
    assert client.post("/api/teacher/notices", json={"title": "Exam", "content": "Friday"}).status_code == 201

    dash = client.get("/api/teacher/dashboard").get_json()
    assert dash["students"][0]["averageGrade"] == 80
    assert dash["students"][0]["attendance"] == 0


def test_teacher_cannot_touch_other_students(client, school, dm):
    make_teacher(dm, "mr_x")
    _, student = school
    login(client, "mr_x", role="teacher")
    resp = client.post(f"/api/teacher/students/{student['id']}/grades", json={"subject": "Art", "grade": 1, "maxGrade": 1})
    assert resp.status_code == 403
    assert client.post("/api/teacher/students/missing/progress", json={}).status_code == 404


def test_messages_round_trip(client, school):
    teacher, student = school
    login(client, "amy")
    recipients = client.get("/api/messages/recipients").get_json()
    assert recipients == [{"id": teacher["id"], "name": "Mrs Hudson", "role": "teacher"}]
    resp = client.post("/api/messages", json={"toUserId": teacher["id"], "subject": "Help", "content": "Fractions?"})
    assert resp.status_code == 201
    msg_id = resp.get_json()["id"]
    assert client.post("/api/messages", json={"toUserId": "nobody", "subject": "x"}).status_code == 404
    client.post("/logout")

    login(client, "mrs_h", role="teacher")
    listing = client.get("/api/messages").get_json()
    assert listing["unread"] == 1
    assert listing["messages"][0]["fromName"] == "Amy Pond"
    assert client.post(f"/api/messages/{msg_id}/read").get_json()["isRead"] is True
    assert client.get("/api/messages?q=fractions").get_json()["unread"] == 0


def test_events(client, school):
    login(client, "mrs_h", role="teacher")
    resp = client.post("/api/events", json={"title": "Sports day", "startDate": "2024-06-01",
                                            "endDate": "2024-06-02", "eventType": "general"})
    assert resp.status_code == 201
    assert [e["title"] for e in client.get("/api/events?date=2024-06-02").get_json()] == ["Sports day"]
    client.post("/logout")
    login(client, "amy")
    assert client.post("/api/events", json={"title": "Party", "startDate": "2024-06-01"}).status_code == 403


def test_admin_dashboard_reassign_and_settings(client, school, dm):
    teacher, student = school
    spare = make_teacher(dm, "mr_s", "Mr Smith")
    login(client, "admin", "admin123", "admin")
    dash = client.get("/api/admin/dashboard").get_json()
    assert dash["students"][0]["teacher"] == "Mrs Hudson"
    assert {t["studentCount"] for t in dash["teachers"]} == {0, 1}
    assert dash["analytics"]["totalStudents"] == 1

    avail = client.get("/api/admin/available-teachers").get_json()
    assert {t["id"] for t in avail} == {teacher["id"], spare["id"]}
    assert client.post(f"/api/admin/students/{student['id']}/reassign",
                       json={"teacherId": spare["id"]}).status_code == 200
    assert dm.get_student_by_user_id(student["id"])["assignedTeacher"] == spare["id"]
    assert client.post(f"/api/admin/students/{student['id']}/reassign",
                       json={"teacherId": "nobody"}).status_code == 409

    assert client.put("/api/admin/settings", json={"maxStudentsPerTeacher": "30"}).get_json()["maxStudentsPerTeacher"] == 30
    assert client.put("/api/admin/settings", json={"academicYear": "soon"}).status_code == 400
    users = client.get("/api/admin/users?q=pond").get_json()
    assert [u["username"] for u in users] == ["amy"]


def test_admin_export_import_clear(client, school, dm):
    login(client, "admin", "admin123", "admin")
    resp = client.get("/api/admin/export")
    assert "attachment" in resp.headers["Content-Disposition"]
    backup = resp.get_data(as_text=True)
    assert len(json.loads(backup)["students"]) == 1

    assert client.post("/api/admin/clear").status_code == 200
    assert [u["username"] for u in dm.data["users"]] == ["admin"]
    assert client.get("/api/admin/dashboard").status_code == 401

    login(client, "admin", "admin123", "admin")
    assert client.post("/api/admin/import", data="garbage").status_code == 400
    assert client.post("/api/admin/import", data=backup).status_code == 200
    assert len(dm.get_all_students()) == 1


def test_admin_logs(client, school):
    login(client, "amy")
    client.post("/logout")
    login(client, "admin", "admin123", "admin")
    logs = client.get("/api/admin/logs?user=amy").get_json()
    assert [e["action"] for e in logs] == ["Logged out", "Logged in"]
    csv_text = client.get("/api/admin/logs/export?action=logged").get_data(as_text=True)
    assert csv_text.splitlines()[0] == "time,user,role,action"
    assert client.get("/api/admin/logs?start=yesterday").status_code == 400
    assert client.get("/api/admin/logs/archives").get_json() == []
    assert client.get("/api/admin/logs/archives/nope.json").status_code == 404


def test_progress_csv_download(client, school, dm):
    teacher, student = school
    dm.add_progress_report(teacher["id"], student["id"], {"math": "77", "remarks": "Solid"})
    login(client, "amy")
    resp = client.get("/api/student/progress-report.csv")
    assert resp.mimetype == "text/csv"
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == "date,math,science,english,attendance,behavior,remarks"
    assert ",77,N/A,N/A,N/A,N/A,Solid" in lines[1]


def test_cli_export_import_reset(tmp_path, monkeypatch):
    monkeypatch.setattr(school_portal, "portal", None)
    data = str(tmp_path / "store.json")
    backup = str(tmp_path / "backup.json")
    assert school_portal.main(["--data", data, "--export", backup]) == 0
    with open(backup, encoding="utf-8") as f:
        assert json.load(f)["users"][0]["username"] == "admin"
    school_portal.portal.add_user("amy", "pw", "student")
    assert school_portal.main(["--data", data, "--reset"]) == 0
    assert len(school_portal.portal.data["users"]) == 1
    bad = tmp_path / "bad.json"
    bad.write_text("nope", encoding="utf-8")
    assert school_portal.main(["--data", data, "--import", str(bad)]) == 1
    assert school_portal.main(["--data", data, "--import", backup]) == 0


def test_non_object_json_body_reads_as_empty(client, school):
    assert client.post("/login", json=[1, 2]).status_code == 401
    assert client.post("/signup", json=["amy", "pw"]).status_code == 400
    login(client, "mrs_h", role="teacher")
    assert client.post("/api/teacher/notices", json="Exam").status_code == 400
