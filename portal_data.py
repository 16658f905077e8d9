# portal_data.py
"""
Data management for the school portal.

One DataManager holds the whole object graph (users, students, teachers,
progress reports, notices, attendance, messages, events, grades, analytics,
settings) in memory and writes it back to a single JSON file after every
mutation. Keys in the stored JSON stay camelCase so exports can be moved
between installs unchanged.
"""

import os, json, math, random, string, secrets, hashlib, datetime

import portal_config as config

# ---------------- Utilities ----------------
BASE36 = string.digits + string.ascii_lowercase


def utc_now():
    return datetime.datetime.now(datetime.timezone.utc)


def to_base36(n):
    if n <= 0:
        return "0"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = BASE36[r] + out
    return out


def round_half_up(value):
    return int(math.floor(value + 0.5))


def as_date(value):
    """Coerce a date, datetime or ISO string (date or datetime) to a date."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value).strip()[:10])


def stored_date(value):
    """Like as_date, but None for values an imported store may hold in other formats."""
    try:
        return as_date(value)
    except (TypeError, ValueError):
        return None


def hash_password(password, salt=None):
    if salt is None:
        salt = secrets.token_hex(6)
    digest = hashlib.sha256(f"{salt}{password}".encode()).hexdigest()
    return f"{salt}${digest}"


def verify_password(stored, password):
    """Check a salted hash; plaintext values from imported stores still match."""
    if not stored or password is None:
        return False
    if "$" not in stored:
        return stored == password
    salt, _ = stored.split("$", 1)
    return hash_password(password, salt) == stored


def letter_grade(percentage):
    for low, g in config.GRADE_BOUNDARIES:
        if percentage >= low:
            return g
    return "F"


def check_storable(data):
    """Raise ValueError for values the JSON store cannot hold."""
    try:
        json.dumps(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Cannot store value: {e}")
    return data


def _contains(haystack, needle):
    return needle in (haystack or "").lower()


# ---------------- DataManager ----------------
class DataManager:
    def __init__(self, path=None, now=None):
        self.path = path or config.DATA_FILE
        self._now = now or utc_now
        self.data = self.load_data()
        self.initialize_data()

    # persistence
    def load_data(self):
        store = config.empty_store()
        if not os.path.exists(self.path):
            return store
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            print(f"Could not read {self.path}, starting empty:", e)
            return store
        if not isinstance(loaded, dict):
            print(f"Ignoring {self.path}: not a portal store")
            return store
        store.update(loaded)
        return store

    def save_data(self):
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        # serialise before touching the file so a bad value cannot truncate it
        payload = json.dumps(self.data, indent=2)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, self.path)

    def initialize_data(self):
        if not self.data["users"]:
            uname, pwd = config.DEFAULT_ADMIN
            self.add_user(uname, pwd, "admin", {"name": "System Administrator", "email": "admin@school.com"})

    def export_data(self):
        return json.dumps(self.data, indent=2)

    def import_data(self, json_data):
        try:
            imported = json.loads(json_data)
        except (TypeError, ValueError) as e:
            print("Error importing data:", e)
            return False
        if not isinstance(imported, dict):
            print("Error importing data: expected a JSON object")
            return False
        store = config.empty_store()
        store.update(imported)
        self.data = store
        self.save_data()
        return True

    def clear_data(self):
        self.data = config.empty_store()
        self.save_data()

    # ids and timestamps
    def timestamp(self):
        dt = self._now().astimezone(datetime.timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"

    def generate_id(self):
        ms = int(self._now().timestamp() * 1000)
        return to_base36(ms) + ''.join(random.choices(BASE36, k=10))

    def generate_student_id(self):
        year = self._now().year
        return f"STU{year}{len(self.data['students']) + 1:04d}"

    def generate_teacher_id(self):
        return f"TCH{len(self.data['teachers']) + 1:03d}"

    def _newest_first(self, records, key="createdAt"):
        return sorted(records, key=lambda r: r.get(key) or "", reverse=True)

    # ---------------- users ----------------
    def add_user(self, username, password, role, profile=None):
        if role not in config.ROLES:
            raise ValueError(f"Unknown role: {role}")
        if not username or not password:
            raise ValueError("Username and password are required")
        if any(u["username"] == username for u in self.data["users"]):
            raise ValueError(f"Username already exists: {username}")
        user = {
            "id": self.generate_id(),
            "username": username,
            "password": hash_password(password),
            "role": role,
            "profile": dict(check_storable(profile or {})),
            "createdAt": self.timestamp(),
        }
        self.data["users"].append(user)
        if role == "student":
            self.data["students"].append(dict(user, profile=dict(user["profile"]),
                                              studentId=self.generate_student_id(),
                                              assignedTeacher=None,
                                              isProfileComplete=False))
        elif role == "teacher":
            cap = self.data["settings"].get("maxStudentsPerTeacher", config.DEFAULT_MAX_STUDENTS)
            self.data["teachers"].append(dict(user, profile=dict(user["profile"]),
                                              teacherId=self.generate_teacher_id(),
                                              isProfileComplete=False,
                                              maxStudents=cap))
        self.save_data()
        return user

    def authenticate_user(self, username, password, role):
        for u in self.data["users"]:
            if u["username"] == username and u["role"] == role and verify_password(u["password"], password):
                return u
        return None

    def get_user_by_id(self, user_id):
        return next((u for u in self.data["users"] if u["id"] == user_id), None)

    def get_student_by_user_id(self, user_id):
        return next((s for s in self.data["students"] if s["id"] == user_id), None)

    def get_teacher_by_user_id(self, user_id):
        return next((t for t in self.data["teachers"] if t["id"] == user_id), None)

    def get_all_students(self):
        return self.data["students"]

    def get_all_teachers(self):
        return self.data["teachers"]

    def search_users(self, query, role=None):
        q = (query or "").lower()
        users = self.data["users"]
        if role:
            users = [u for u in users if u["role"] == role]
        return [u for u in users if _contains(u["username"], q) or _contains((u.get("profile") or {}).get("name"), q)]

    # ---------------- profiles ----------------
    def _merge_profile(self, record, profile_data):
        check_storable(profile_data)
        record["profile"] = {**record.get("profile", {}), **profile_data}
        record["isProfileComplete"] = True
        user = self.get_user_by_id(record["id"])
        if user is not None:
            user["profile"] = dict(record["profile"])

    def update_student_profile(self, user_id, profile_data):
        student = self.get_student_by_user_id(user_id)
        if not student:
            return None
        self._merge_profile(student, profile_data)
        if not student.get("assignedTeacher"):
            self.assign_student_to_teacher(student["id"])
        self.save_data()
        return student

    def update_teacher_profile(self, user_id, profile_data):
        teacher = self.get_teacher_by_user_id(user_id)
        if not teacher:
            return None
        self._merge_profile(teacher, profile_data)
        self.save_data()
        return teacher

    # ---------------- assignment ----------------
    def get_students_by_teacher(self, teacher_id):
        return [s for s in self.data["students"] if s.get("assignedTeacher") == teacher_id]

    def get_available_teachers(self):
        """Profile-complete teachers with spare capacity, each with its studentCount."""
        out = []
        for t in self.data["teachers"]:
            if not t.get("isProfileComplete"):
                continue
            count = len(self.get_students_by_teacher(t["id"]))
            if count < t.get("maxStudents", config.DEFAULT_MAX_STUDENTS):
                out.append(dict(t, studentCount=count))
        return out

    def assign_student_to_teacher(self, student_id):
        """Give an unassigned student to the least-loaded teacher that still has room.

        Ties go to the teacher registered first. Returns the teacher id, or None
        when the student is missing, already assigned, or nobody has capacity.
        """
        student = next((s for s in self.data["students"] if s["id"] == student_id), None)
        if not student or student.get("assignedTeacher"):
            return None
        candidates = sorted(self.get_available_teachers(), key=lambda t: t["studentCount"])
        if not candidates:
            return None
        student["assignedTeacher"] = candidates[0]["id"]
        self.save_data()
        return student["assignedTeacher"]

    def reassign_student(self, student_id, new_teacher_id):
        student = next((s for s in self.data["students"] if s["id"] == student_id), None)
        teacher = self.get_teacher_by_user_id(new_teacher_id)
        if not student or not teacher:
            return False
        if len(self.get_students_by_teacher(new_teacher_id)) >= teacher.get("maxStudents", config.DEFAULT_MAX_STUDENTS):
            return False
        student["assignedTeacher"] = new_teacher_id
        self.save_data()
        return True

    # ---------------- progress reports & notices ----------------
    def add_progress_report(self, teacher_id, student_id, report_data):
        report = {"id": self.generate_id(), "teacherId": teacher_id, "studentId": student_id}
        report.update(check_storable(report_data or {}))
        report["createdAt"] = self.timestamp()
        self.data["progressReports"].append(report)
        self.save_data()
        return report

    def get_progress_report(self, report_id):
        return next((r for r in self.data["progressReports"] if r["id"] == report_id), None)

    def get_progress_reports_for_student(self, student_id):
        return self._newest_first(r for r in self.data["progressReports"] if r["studentId"] == student_id)

    def update_progress_report(self, report_id, report_data):
        report = self.get_progress_report(report_id)
        if not report:
            return None
        report.update(check_storable(report_data))
        self.save_data()
        return report

    def progress_report_rows(self, student_id):
        rows = []
        for r in self.get_progress_reports_for_student(student_id):
            rows.append({
                "date": r["createdAt"][:10],
                "math": r.get("math") or "N/A",
                "science": r.get("science") or "N/A",
                "english": r.get("english") or "N/A",
                "attendance": r.get("attendance") or "N/A",
                "behavior": r.get("behavior") or "N/A",
                "remarks": r.get("remarks") or "N/A",
            })
        return rows

    def add_notice(self, teacher_id, notice_data):
        notice = {"id": self.generate_id(), "teacherId": teacher_id}
        notice.update(check_storable(notice_data or {}))
        notice["createdAt"] = self.timestamp()
        self.data["notices"].append(notice)
        self.save_data()
        return notice

    def get_notices_for_students(self, teacher_id):
        return self._newest_first(n for n in self.data["notices"] if n["teacherId"] == teacher_id)

    # ---------------- attendance ----------------
    def mark_attendance(self, student_id, date, status, remarks="", marked_by=None):
        if status not in config.ATTENDANCE_STATUSES:
            raise ValueError(f"Unknown attendance status: {status}")
        day = as_date(date).isoformat()
        record = {
            "id": self.generate_id(),
            "studentId": student_id,
            "date": day,
            "status": status,
            "remarks": remarks,
            "markedBy": marked_by,
            "createdAt": self.timestamp(),
        }
        # one record per student per day
        self.data["attendance"] = [a for a in self.data["attendance"]
                                   if not (a["studentId"] == student_id and a["date"] == day)]
        self.data["attendance"].append(record)
        self.save_data()
        return record

    def get_attendance_for_student(self, student_id, start_date, end_date):
        start, end = as_date(start_date), as_date(end_date)
        rows = []
        for a in self.data["attendance"]:
            day = stored_date(a.get("date"))
            if a["studentId"] == student_id and day and start <= day <= end:
                rows.append((day, a))
        return [a for _, a in sorted(rows, key=lambda r: r[0])]

    def get_attendance_stats(self, student_id):
        records = [a for a in self.data["attendance"] if a["studentId"] == student_id]
        total = len(records)
        counts = {s: sum(1 for a in records if a["status"] == s) for s in ("present", "absent", "late")}
        return {
            "total": total,
            "present": counts["present"],
            "absent": counts["absent"],
            "late": counts["late"],
            "percentage": round_half_up(counts["present"] / total * 100) if total else 0,
        }

    # ---------------- messages ----------------
    def send_message(self, from_user_id, to_user_id, subject, content, message_type="general"):
        if message_type not in config.MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {message_type}")
        message = {
            "id": self.generate_id(),
            "fromUserId": from_user_id,
            "toUserId": to_user_id,
            "subject": subject,
            "content": content,
            "messageType": message_type,
            "isRead": False,
            "createdAt": self.timestamp(),
        }
        self.data["messages"].append(message)
        self.save_data()
        return message

    def get_message(self, message_id):
        return next((m for m in self.data["messages"] if m["id"] == message_id), None)

    def get_messages_for_user(self, user_id):
        return self._newest_first(m for m in self.data["messages"]
                                  if m["toUserId"] == user_id or m["fromUserId"] == user_id)

    def get_unread_message_count(self, user_id):
        return sum(1 for m in self.data["messages"] if m["toUserId"] == user_id and not m["isRead"])

    def mark_message_as_read(self, message_id):
        message = self.get_message(message_id)
        if not message:
            return False
        message["isRead"] = True
        self.save_data()
        return True

    def search_messages(self, query, user_id):
        q = (query or "").lower()
        return [m for m in self.get_messages_for_user(user_id)
                if _contains(m.get("subject"), q) or _contains(m.get("content"), q)]

    def get_message_recipients(self, user_id):
        user = self.get_user_by_id(user_id)
        if not user:
            return []
        if user["role"] == "student":
            student = self.get_student_by_user_id(user_id)
            teacher = self.get_user_by_id(student.get("assignedTeacher")) if student else None
            return [teacher] if teacher else []
        if user["role"] == "teacher":
            return self.get_students_by_teacher(user_id)
        return [u for u in self.data["users"] if u["id"] != user_id]

    # ---------------- events ----------------
    def create_event(self, created_by, title, description, start_date, end_date, event_type="general"):
        if event_type not in config.EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        if as_date(end_date) < as_date(start_date):
            raise ValueError("Event ends before it starts")
        event = {
            "id": self.generate_id(),
            "createdBy": created_by,
            "title": title,
            "description": description,
            "startDate": str(start_date),
            "endDate": str(end_date),
            "eventType": event_type,
            "participants": [],
            "createdAt": self.timestamp(),
        }
        self.data["events"].append(event)
        self.save_data()
        return event

    def get_events_for_date(self, date):
        day = as_date(date)
        out = []
        for e in self.data["events"]:
            start, end = stored_date(e.get("startDate")), stored_date(e.get("endDate"))
            if start and end and start <= day <= end:
                out.append(e)
        return out

    # ---------------- grades ----------------
    def add_grade(self, student_id, subject, grade, max_grade, grade_type="assignment", remarks="", added_by=None):
        if grade_type not in config.GRADE_TYPES:
            raise ValueError(f"Unknown grade type: {grade_type}")
        if max_grade is None or max_grade <= 0:
            raise ValueError("max_grade must be positive")
        record = {
            "id": self.generate_id(),
            "studentId": student_id,
            "subject": subject,
            "grade": grade,
            "maxGrade": max_grade,
            "percentage": round_half_up(grade / max_grade * 100),
            "gradeType": grade_type,
            "remarks": remarks,
            "addedBy": added_by,
            "createdAt": self.timestamp(),
        }
        self.data["grades"].append(record)
        self.save_data()
        return record

    def get_grades_for_student(self, student_id, subject=None):
        grades = [g for g in self.data["grades"] if g["studentId"] == student_id]
        if subject:
            grades = [g for g in grades if g["subject"].lower() == subject.lower()]
        return self._newest_first(grades)

    def get_grade_average(self, student_id, subject=None):
        grades = self.get_grades_for_student(student_id, subject)
        if not grades:
            return 0
        return round_half_up(sum(g["percentage"] for g in grades) / len(grades))

    # ---------------- analytics ----------------
    def update_analytics(self):
        analytics = {
            "totalStudents": len(self.data["students"]),
            "totalTeachers": len(self.data["teachers"]),
            "totalMessages": len(self.data["messages"]),
            "totalEvents": len(self.data["events"]),
            "averageAttendance": self.calculate_average_attendance(),
            "topPerformingStudents": self.get_top_performing_students(),
            "recentActivity": self.get_recent_activity(),
            "lastUpdated": self.timestamp(),
        }
        self.data["analytics"] = analytics
        self.save_data()
        return analytics

    def calculate_average_attendance(self):
        students = self.data["students"]
        if not students:
            return 0
        total = sum(self.get_attendance_stats(s["id"])["percentage"] for s in students)
        return round_half_up(total / len(students))

    def get_top_performing_students(self, limit=5):
        ranked = [dict(s, averageGrade=self.get_grade_average(s["id"])) for s in self.data["students"]]
        ranked.sort(key=lambda s: s["averageGrade"], reverse=True)
        return ranked[:limit]

    def _username(self, user_id):
        user = self.get_user_by_id(user_id)
        return user["username"] if user else None

    def get_recent_activity(self, limit=10):
        activities = []
        for report in self._newest_first(self.data["progressReports"])[:limit]:
            activities.append({
                "type": "progress_report",
                "description": "Progress report updated",
                "date": report["createdAt"],
                "user": self._username(report["teacherId"]),
            })
        for message in self._newest_first(self.data["messages"])[:limit]:
            activities.append({
                "type": "message",
                "description": f"Message: {message['subject']}",
                "date": message["createdAt"],
                "user": self._username(message["fromUserId"]),
            })
        return self._newest_first(activities, key="date")[:limit]

    # ---------------- settings ----------------
    def update_settings(self, new_settings):
        check_storable(new_settings)
        self.data["settings"] = {**self.data["settings"], **new_settings}
        self.save_data()
        return self.data["settings"]

    def get_settings(self):
        return self.data["settings"]
