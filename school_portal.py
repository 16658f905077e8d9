# school_portal.py
"""
School portal - Flask JSON dashboards over a single JSON data store
Features:
 - CLI: --dev / --prod --port --host --data, one-shot --export / --import / --reset
 - Web: session login, student / teacher / admin dashboard endpoints
 - Data persisted whole to one JSON file after every change (portal_data)
 - Activity logs to logs/logs.json with term rotation/archives (portal_logs)
 - Startup/shutdown logs & console summary
"""

import io, csv, sys, signal, argparse, datetime
from functools import wraps

from flask import Flask, request, session, jsonify, Response

import portal_config as config
import portal_logs
from portal_logs import append_log
from portal_data import DataManager, letter_grade

portal = None


def init_portal(path=None, now=None):
    global portal
    portal = DataManager(path, now=now)
    return portal


def get_portal():
    if portal is None:
        init_portal()
    return portal

# ---------------- Flask app ----------------
flask_app = Flask(__name__)
flask_app.secret_key = config.SECRET_KEY


def error_response(status, message):
    return jsonify({"error": message}), status


def public(record):
    """Strip password hashes before anything leaves the process."""
    if record is None:
        return None
    if isinstance(record, list):
        return [public(r) for r in record]
    return {k: v for k, v in record.items() if k != "password"}


def display_name(user):
    if not user:
        return None
    return (user.get("profile") or {}).get("name") or user.get("username")


def body():
    # non-object JSON such as an array reads as an empty body
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def current_user():
    u = session.get("user")
    return get_portal().get_user_by_id(u["id"]) if u else None


def log_action(action):
    u = session.get("user", {})
    append_log(u.get("username", "anonymous"), u.get("role", ""), action)


def login_required(f):
    @wraps(f)
    def inner(*args, **kwargs):
        if "user" not in session or current_user() is None:
            session.clear()
            return error_response(401, "Login required")
        return f(*args, **kwargs)
    return inner


def role_required(roles):
    def deco(f):
        @wraps(f)
        def inner(*args, **kwargs):
            u = session.get("user")
            if not u or u.get("role") not in roles:
                return error_response(403, "Permission denied")
            return f(*args, **kwargs)
        return inner
    return deco


@flask_app.errorhandler(ValueError)
def handle_value_error(e):
    return error_response(400, str(e))


def _int_field(data, key, default=None):
    raw = data.get(key, default)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number")


def _number_field(data, key):
    raw = data.get(key)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number")


# ---------------- auth routes ----------------
@flask_app.route("/login", methods=["POST"])
def login():
    data = body()
    uname = (data.get("username") or "").strip()
    role = data.get("role", "student")
    user = get_portal().authenticate_user(uname, data.get("password", ""), role)
    if not user:
        return error_response(401, "Invalid credentials")
    session["user"] = {"id": user["id"], "username": user["username"], "role": user["role"]}
    append_log(uname, role, "Logged in")
    return jsonify(public(user))


@flask_app.route("/signup", methods=["POST"])
def signup():
    data = body()
    uname = (data.get("username") or "").strip()
    role = data.get("role", "student")
    if role == "admin":
        return error_response(403, "Admin accounts cannot be self-registered")
    user = get_portal().add_user(uname, data.get("password", ""), role, data.get("profile"))
    session["user"] = {"id": user["id"], "username": user["username"], "role": user["role"]}
    append_log(uname, role, "Signed up")
    return jsonify(public(user)), 201


@flask_app.route("/logout", methods=["POST"])
@login_required
def logout():
    log_action("Logged out")
    session.clear()
    return jsonify({"ok": True})


@flask_app.route("/api/me")
@login_required
def me():
    user = current_user()
    return jsonify({"user": public(user), "unreadMessages": get_portal().get_unread_message_count(user["id"])})


# ---------------- student dashboard ----------------
@flask_app.route("/api/student/dashboard")
@login_required
@role_required(["student"])
def student_dashboard():
    p = get_portal()
    student = p.get_student_by_user_id(session["user"]["id"])
    if not student:
        return error_response(404, "No student record")
    teacher_id = student.get("assignedTeacher")
    average = p.get_grade_average(student["id"])
    return jsonify({
        "student": public(student),
        "teacher": display_name(p.get_teacher_by_user_id(teacher_id)),
        "progressReports": p.get_progress_reports_for_student(student["id"]),
        "notices": p.get_notices_for_students(teacher_id) if teacher_id else [],
        "grades": p.get_grades_for_student(student["id"]),
        "averageGrade": average,
        "letterGrade": letter_grade(average),
        "attendance": p.get_attendance_stats(student["id"]),
        "unreadMessages": p.get_unread_message_count(student["id"]),
        "eventsToday": p.get_events_for_date(datetime.date.today()),
    })


@flask_app.route("/api/student/profile", methods=["PUT"])
@login_required
@role_required(["student"])
def student_profile():
    student = get_portal().update_student_profile(session["user"]["id"], body())
    if not student:
        return error_response(404, "No student record")
    log_action("Updated student profile")
    return jsonify(public(student))


@flask_app.route("/api/student/grades")
@login_required
@role_required(["student"])
def student_grades():
    p = get_portal()
    uid = session["user"]["id"]
    subject = request.args.get("subject") or None
    return jsonify({"grades": p.get_grades_for_student(uid, subject),
                    "average": p.get_grade_average(uid, subject)})


@flask_app.route("/api/student/attendance")
@login_required
@role_required(["student"])
def student_attendance():
    p = get_portal()
    uid = session["user"]["id"]
    today = datetime.date.today()
    start = request.args.get("start") or today.replace(day=1).isoformat()
    end = request.args.get("end") or today.isoformat()
    return jsonify({"records": p.get_attendance_for_student(uid, start, end),
                    "stats": p.get_attendance_stats(uid)})


@flask_app.route("/api/student/progress-report.csv")
@login_required
@role_required(["student"])
def student_progress_csv():
    p = get_portal()
    student = p.get_student_by_user_id(session["user"]["id"])
    if not student:
        return error_response(404, "No student record")
    rows = p.progress_report_rows(student["id"])
    buf = io.StringIO()
    w = csv.DictWriter(buf, fieldnames=["date", "math", "science", "english", "attendance", "behavior", "remarks"])
    w.writeheader()
    w.writerows(rows)
    fname = f"progress-report-{student['studentId']}-{datetime.date.today().isoformat()}.csv"
    return Response(buf.getvalue(), mimetype="text/csv",
                    headers={"Content-Disposition": f"attachment; filename={fname}"})


# ---------------- teacher dashboard ----------------
def _student_for_teacher(student_id):
    """Student record if the caller may act on it: admins always, teachers for their own students."""
    student = get_portal().get_student_by_user_id(student_id)
    if not student:
        return None, error_response(404, "No student")
    u = session["user"]
    if u["role"] == "teacher" and student.get("assignedTeacher") != u["id"]:
        return None, error_response(403, "Permission denied")
    return student, None


@flask_app.route("/api/teacher/dashboard")
@login_required
@role_required(["teacher"])
def teacher_dashboard():
    p = get_portal()
    teacher = p.get_teacher_by_user_id(session["user"]["id"])
    if not teacher:
        return error_response(404, "No teacher record")
    students = []
    for s in p.get_students_by_teacher(teacher["id"]):
        students.append(dict(public(s),
                             attendance=p.get_attendance_stats(s["id"])["percentage"],
                             averageGrade=p.get_grade_average(s["id"])))
    return jsonify({
        "teacher": public(teacher),
        "students": students,
        "studentCount": len(students),
        "notices": p.get_notices_for_students(teacher["id"]),
        "unreadMessages": p.get_unread_message_count(teacher["id"]),
        "eventsToday": p.get_events_for_date(datetime.date.today()),
    })


@flask_app.route("/api/teacher/profile", methods=["PUT"])
@login_required
@role_required(["teacher"])
def teacher_profile():
    teacher = get_portal().update_teacher_profile(session["user"]["id"], body())
    if not teacher:
        return error_response(404, "No teacher record")
    log_action("Updated teacher profile")
    return jsonify(public(teacher))


@flask_app.route("/api/teacher/students/<student_id>/progress", methods=["POST"])
@login_required
@role_required(["teacher", "admin"])
def add_progress(student_id):
    student, err = _student_for_teacher(student_id)
    if err:
        return err
    fields = ("math", "science", "english", "attendance", "behavior", "remarks")
    data = {k: v for k, v in body().items() if k in fields}
    report = get_portal().add_progress_report(session["user"]["id"], student["id"], data)
    log_action(f"Added progress report for {student['studentId']}")
    return jsonify(report), 201


@flask_app.route("/api/progress/<report_id>", methods=["PUT"])
@login_required
@role_required(["teacher", "admin"])
def update_progress(report_id):
    p = get_portal()
    report = p.get_progress_report(report_id)
    if not report:
        return error_response(404, "No progress report")
    u = session["user"]
    if u["role"] == "teacher" and report["teacherId"] != u["id"]:
        return error_response(403, "Permission denied")
    data = {k: v for k, v in body().items() if k not in ("id", "teacherId", "studentId", "createdAt")}
    report = p.update_progress_report(report_id, data)
    log_action(f"Updated progress report {report_id}")
    return jsonify(report)


@flask_app.route("/api/teacher/notices", methods=["POST"])
@login_required
@role_required(["teacher"])
def post_notice():
    data = body()
    title = (data.get("title") or "").strip()
    if not title:
        return error_response(400, "Notice title is required")
    notice = get_portal().add_notice(session["user"]["id"], {"title": title, "content": data.get("content", "")})
    log_action(f"Posted notice '{title}'")
    return jsonify(notice), 201


@flask_app.route("/api/teacher/students/<student_id>/attendance", methods=["POST"])
@login_required
@role_required(["teacher", "admin"])
def post_attendance(student_id):
    student, err = _student_for_teacher(student_id)
    if err:
        return err
    data = body()
    day = data.get("date") or datetime.date.today().isoformat()
    record = get_portal().mark_attendance(student["id"], day, data.get("status", ""),
                                          data.get("remarks", ""), marked_by=session["user"]["id"])
    log_action(f"Marked {record['status']} for {student['studentId']} on {record['date']}")
    return jsonify(record), 201


@flask_app.route("/api/teacher/students/<student_id>/grades", methods=["POST"])
@login_required
@role_required(["teacher", "admin"])
def post_grade(student_id):
    student, err = _student_for_teacher(student_id)
    if err:
        return err
    data = body()
    subject = (data.get("subject") or "").strip()
    if not subject:
        return error_response(400, "Subject is required")
    record = get_portal().add_grade(student["id"], subject, _number_field(data, "grade"),
                                    _number_field(data, "maxGrade"), data.get("gradeType", "assignment"),
                                    data.get("remarks", ""), added_by=session["user"]["id"])
    log_action(f"Added {subject} grade for {student['studentId']}")
    return jsonify(record), 201


# ---------------- messages ----------------
@flask_app.route("/api/messages")
@login_required
def list_messages():
    p = get_portal()
    uid = session["user"]["id"]
    q = request.args.get("q", "").strip()
    messages = p.search_messages(q, uid) if q else p.get_messages_for_user(uid)
    out = [dict(m, fromName=display_name(p.get_user_by_id(m["fromUserId"]))) for m in messages]
    return jsonify({"messages": out, "unread": p.get_unread_message_count(uid)})


@flask_app.route("/api/messages/recipients")
@login_required
def message_recipients():
    recipients = get_portal().get_message_recipients(session["user"]["id"])
    return jsonify([{"id": r["id"], "name": display_name(r), "role": r["role"]} for r in recipients])


@flask_app.route("/api/messages", methods=["POST"])
@login_required
def send_message():
    p = get_portal()
    data = body()
    to_id = data.get("toUserId")
    if not p.get_user_by_id(to_id):
        return error_response(404, "No such recipient")
    subject = (data.get("subject") or "").strip()
    if not subject:
        return error_response(400, "Subject is required")
    message = p.send_message(session["user"]["id"], to_id, subject, data.get("content", ""),
                             data.get("messageType", "general"))
    log_action(f"Sent message '{subject}'")
    return jsonify(message), 201


@flask_app.route("/api/messages/<message_id>/read", methods=["POST"])
@login_required
def read_message(message_id):
    p = get_portal()
    message = p.get_message(message_id)
    uid = session["user"]["id"]
    if not message or uid not in (message["toUserId"], message["fromUserId"]):
        return error_response(404, "No such message")
    if message["toUserId"] == uid:
        p.mark_message_as_read(message_id)
    return jsonify(dict(message, fromName=display_name(p.get_user_by_id(message["fromUserId"]))))


# ---------------- events ----------------
@flask_app.route("/api/events")
@login_required
def list_events():
    day = request.args.get("date") or datetime.date.today().isoformat()
    return jsonify(get_portal().get_events_for_date(day))


@flask_app.route("/api/events", methods=["POST"])
@login_required
@role_required(["teacher", "admin"])
def create_event():
    data = body()
    title = (data.get("title") or "").strip()
    if not title or not data.get("startDate"):
        return error_response(400, "Title and start date are required")
    event = get_portal().create_event(session["user"]["id"], title, data.get("description", ""),
                                      data["startDate"], data.get("endDate") or data["startDate"],
                                      data.get("eventType", "general"))
    log_action(f"Created event '{title}'")
    return jsonify(event), 201


# ---------------- admin dashboard ----------------
@flask_app.route("/api/admin/dashboard")
@login_required
@role_required(["admin"])
def admin_dashboard():
    p = get_portal()
    students = [dict(public(s), teacher=display_name(p.get_teacher_by_user_id(s.get("assignedTeacher"))))
                for s in p.get_all_students()]
    teachers = [dict(public(t), studentCount=len(p.get_students_by_teacher(t["id"])))
                for t in p.get_all_teachers()]
    analytics = p.update_analytics()
    return jsonify({
        "students": students,
        "teachers": teachers,
        "analytics": dict(analytics, topPerformingStudents=public(analytics["topPerformingStudents"])),
        "settings": p.get_settings(),
        "unreadMessages": p.get_unread_message_count(session["user"]["id"]),
    })


@flask_app.route("/api/admin/available-teachers")
@login_required
@role_required(["admin"])
def available_teachers():
    return jsonify(public(get_portal().get_available_teachers()))


@flask_app.route("/api/admin/students/<student_id>/reassign", methods=["POST"])
@login_required
@role_required(["admin"])
def reassign(student_id):
    teacher_id = body().get("teacherId")
    if not get_portal().reassign_student(student_id, teacher_id):
        return error_response(409, "Failed to reassign student")
    log_action(f"Reassigned student {student_id} to {teacher_id}")
    return jsonify({"ok": True})


@flask_app.route("/api/admin/users")
@login_required
@role_required(["admin"])
def search_users():
    users = get_portal().search_users(request.args.get("q", ""), request.args.get("role") or None)
    return jsonify(public(users))


@flask_app.route("/api/admin/settings", methods=["GET", "PUT"])
@login_required
@role_required(["admin"])
def settings():
    p = get_portal()
    if request.method == "GET":
        return jsonify(p.get_settings())
    data = body()
    allowed = {}
    if "schoolName" in data:
        allowed["schoolName"] = str(data["schoolName"])
    if "gradingScale" in data:
        allowed["gradingScale"] = str(data["gradingScale"])
    for key in ("academicYear", "maxStudentsPerTeacher"):
        if key in data:
            allowed[key] = _int_field(data, key)
    result = p.update_settings(allowed)
    log_action("Updated settings")
    return jsonify(result)


@flask_app.route("/api/admin/analytics", methods=["POST"])
@login_required
@role_required(["admin"])
def refresh_analytics():
    analytics = get_portal().update_analytics()
    return jsonify(dict(analytics, topPerformingStudents=public(analytics["topPerformingStudents"])))


@flask_app.route("/api/admin/export")
@login_required
@role_required(["admin"])
def export_data():
    log_action("Exported data")
    fname = f"student-teacher-data-{datetime.date.today().isoformat()}.json"
    return Response(get_portal().export_data(), mimetype="application/json",
                    headers={"Content-Disposition": f"attachment; filename={fname}"})


@flask_app.route("/api/admin/import", methods=["POST"])
@login_required
@role_required(["admin"])
def import_data():
    if not get_portal().import_data(request.get_data(as_text=True)):
        return error_response(400, "Invalid data file")
    log_action("Imported data")
    return jsonify({"ok": True})


@flask_app.route("/api/admin/clear", methods=["POST"])
@login_required
@role_required(["admin"])
def clear_data():
    p = get_portal()
    log_action("Cleared all data")
    p.clear_data()
    p.initialize_data()
    session.clear()
    return jsonify({"ok": True})


def _log_filters():
    fmt = "%Y-%m-%d"
    start_raw = request.args.get("start", "")
    end_raw = request.args.get("end", "")
    try:
        start = datetime.datetime.strptime(start_raw, fmt) if start_raw else None
        end = datetime.datetime.strptime(end_raw, fmt) + datetime.timedelta(days=1) if end_raw else None
    except ValueError:
        raise ValueError("Dates must be YYYY-MM-DD")
    return portal_logs.filter_logs(user=request.args.get("user") or None,
                                   action=request.args.get("action") or None, start=start, end=end)


@flask_app.route("/api/admin/logs")
@login_required
@role_required(["admin"])
def logs_page():
    return jsonify(list(reversed(_log_filters())))


@flask_app.route("/api/admin/logs/export")
@login_required
@role_required(["admin"])
def logs_export():
    buf = io.StringIO()
    portal_logs.write_logs_csv(_log_filters(), buf)
    fname = f"logs_export_{datetime.datetime.now().strftime('%Y%m%d%H%M%S')}.csv"
    return Response(buf.getvalue(), mimetype="text/csv",
                    headers={"Content-Disposition": f"attachment; filename={fname}"})


@flask_app.route("/api/admin/logs/archives")
@login_required
@role_required(["admin"])
def logs_archives():
    return jsonify(portal_logs.list_archives())


@flask_app.route("/api/admin/logs/archives/<name>")
@login_required
@role_required(["admin"])
def logs_archive(name):
    logs = portal_logs.load_archive(name)
    if logs is None:
        return error_response(404, "No such archive")
    return jsonify(logs)


# ---------------- Flask run helpers ----------------
def run_flask_dev(host, port):
    print(f"🛠️ Flask dev server running on {host}:{port}")
    flask_app.run(host=host, port=port, debug=False, use_reloader=False)


def run_with_waitress(host, port):
    from waitress import serve
    print(f"🚀 Waitress serving on {host}:{port}")
    serve(flask_app, listen=f"{host}:{port}")


# ---------------- Startup / Shutdown handling ----------------
def startup_self_check(mode_str, host, port):
    p = get_portal()
    settings = p.get_settings()
    print(f"✅ {settings.get('schoolName')} portal started!")
    print(f"Data file: {p.path}")
    print(f"Users loaded: {len(p.data['users'])}")
    print(f"Students loaded: {len(p.data['students'])}")
    print(f"Teachers loaded: {len(p.data['teachers'])}")
    print(f"Logs loaded: {len(portal_logs.load_logs_file())} | Archives: {len(portal_logs.list_archives())}")
    print()
    print(f"Mode: {mode_str}")
    print(f"Running at: http://{host}:{port}")
    append_log("SYSTEM", "Server", f"System started in {mode_str} on {host}:{port}")


def shutdown_handler(signum=None, frame=None):
    append_log("SYSTEM", "Server", "System stopped gracefully")
    print("🛑 School portal shutting down...")
    sys.exit(0)


# ---------------- Main entry ----------------
def build_parser():
    parser = argparse.ArgumentParser(description="Run the school portal")
    parser.add_argument("--prod", action="store_true", help="Run in production mode (Waitress)")
    parser.add_argument("--dev", action="store_true", help="Run in dev mode (Flask built-in)")
    parser.add_argument("--port", type=int, default=config.DEFAULT_PORT, help="Web server port")
    parser.add_argument("--host", default=config.DEFAULT_HOST, help="Web server host")
    parser.add_argument("--data", default=None, help="Path of the JSON data file")
    parser.add_argument("--export", metavar="PATH", help="Write a JSON backup of all data and exit")
    parser.add_argument("--import", dest="import_path", metavar="PATH", help="Restore data from a JSON backup and exit")
    parser.add_argument("--reset", action="store_true", help="Clear all data (keeps the default admin) and exit")
    return parser


def run_admin_action(args):
    """Run a one-shot --export/--import/--reset action. Returns an exit code, or None when none was asked for."""
    p = get_portal()
    if args.export:
        with open(args.export, "w", encoding="utf-8") as f:
            f.write(p.export_data())
        append_log("SYSTEM", "CLI", f"Exported data to {args.export}")
        print(f"Exported data to {args.export}")
        return 0
    if args.import_path:
        with open(args.import_path, "r", encoding="utf-8") as f:
            ok = p.import_data(f.read())
        if not ok:
            print(f"Import failed: {args.import_path} is not a valid backup")
            return 1
        append_log("SYSTEM", "CLI", f"Imported data from {args.import_path}")
        print(f"Imported data from {args.import_path}")
        return 0
    if args.reset:
        p.clear_data()
        p.initialize_data()
        append_log("SYSTEM", "CLI", "Cleared all data")
        print("All data cleared")
        return 0
    return None


def main(argv=None):
    args = build_parser().parse_args(argv)
    init_portal(args.data)

    code = run_admin_action(args)
    if code is not None:
        return code

    # Rotate logs if term changed
    portal_logs.rotate_logs(force=False)

    host = args.host; port = args.port
    mode = "PRODUCTION" if args.prod else "DEVELOPMENT"
    startup_self_check(mode, host, port)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, shutdown_handler)

    if args.prod:
        run_with_waitress(host, port)
    else:
        run_flask_dev(host, port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
