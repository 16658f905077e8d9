# portal_config.py
"""Configuration for the school portal. Environment variables override the defaults."""

import os, hashlib, random, datetime

# ---------------- CONFIG ----------------
STORAGE_KEY = "studentTeacherPortal"
DATA_FILE = os.environ.get("PORTAL_DATA_FILE") or f"{STORAGE_KEY}.json"
LOG_DIR = os.environ.get("PORTAL_LOG_DIR") or "logs"
LOG_ARCHIVE_THRESHOLD = 2000  # fallback auto-archive size
SECRET_KEY = os.environ.get("PORTAL_SECRET_KEY") or hashlib.sha256(str(random.random()).encode()).hexdigest()

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000

ROLES = ("student", "teacher", "admin")
ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")
MESSAGE_TYPES = ("general", "urgent", "announcement")
EVENT_TYPES = ("general", "exam", "holiday", "meeting")
GRADE_TYPES = ("assignment", "quiz", "exam", "project")

DEFAULT_ADMIN = ("admin", "admin123")
DEFAULT_MAX_STUDENTS = 20

# A-F scale, lower bound of each band, highest first
GRADE_BOUNDARIES = [(90, "A"), (80, "B"), (70, "C"), (60, "D"), (0, "F")]


def default_settings():
    return {
        "schoolName": "Demo School",
        "academicYear": datetime.date.today().year,
        "gradingScale": "A-F",
        "maxStudentsPerTeacher": DEFAULT_MAX_STUDENTS,
    }


def empty_store():
    return {
        "users": [],
        "students": [],
        "teachers": [],
        "progressReports": [],
        "notices": [],
        "assignments": [],  # student-teacher assignments
        "attendance": [],
        "messages": [],
        "events": [],
        "grades": [],
        "analytics": {},
        "settings": default_settings(),
    }
