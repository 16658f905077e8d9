# portal_logs.py
"""
Activity log for the portal.
Entries are {time, user, role, action} kept in <LOG_DIR>/logs.json and rotated
into per-term archives (logs_<year>_Term<n>_<stamp>.json).
"""

import os, csv, json, datetime

import portal_config as config

LOG_DIR = config.LOG_DIR
LOG_ARCHIVE_THRESHOLD = config.LOG_ARCHIVE_THRESHOLD
TIME_FMT = "%Y-%m-%d %H:%M:%S"
CSV_FIELDS = ["time", "user", "role", "action"]


def now_str():
    return datetime.datetime.now().strftime(TIME_FMT)


def log_term_year(dt=None):
    """(year, term) for a moment: Jan-Apr is term 1, May-Aug term 2, Sep-Dec term 3."""
    dt = dt or datetime.datetime.now()
    return dt.year, (dt.month - 1) // 4 + 1


def logs_file():
    return os.path.join(LOG_DIR, "logs.json")


def ensure_log_dir():
    os.makedirs(LOG_DIR, exist_ok=True)


def load_logs_file(path=None):
    ensure_log_dir()
    path = path or logs_file()
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            logs = json.load(f)
    except (OSError, ValueError) as e:
        print(f"Could not read log file {path}:", e)
        return []
    return logs if isinstance(logs, list) else []


def save_logs_file(logs, path=None):
    ensure_log_dir()
    with open(path or logs_file(), "w", encoding="utf-8") as f:
        json.dump(logs, f, indent=2)


def append_log(user, role, action):
    logs = load_logs_file()
    logs.append({"time": now_str(), "user": user, "role": role, "action": action})
    save_logs_file(logs)
    if len(logs) > LOG_ARCHIVE_THRESHOLD:
        rotate_logs(force=True)


def list_archives():
    ensure_log_dir()
    arr = [f for f in os.listdir(LOG_DIR) if f.startswith("logs_") and f.endswith(".json")]
    arr.sort(reverse=True)
    return arr


def rotate_logs(force=False):
    """
    Archive the current logs when no archive exists yet for this term,
    or unconditionally when force=True. Returns the archive name or None.
    """
    current_logs = load_logs_file()
    if not current_logs:
        return None
    year, term = log_term_year()
    prefix = f"logs_{year}_Term{term}"
    if not force and any(a.startswith(prefix) for a in list_archives()):
        return None
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S%f")
    archive_name = f"{prefix}_{ts}.json"
    save_logs_file(current_logs, os.path.join(LOG_DIR, archive_name))
    save_logs_file([])
    return archive_name


def load_archive(name):
    if os.path.basename(name) != name or name not in list_archives():
        return None
    return load_logs_file(os.path.join(LOG_DIR, name))


def entry_time(entry):
    try:
        return datetime.datetime.strptime(entry.get("time", ""), TIME_FMT)
    except (TypeError, ValueError):
        return None


def filter_logs(user=None, action=None, start=None, end=None, path=None):
    """Entries matching every given criterion. Action matches as a case-insensitive substring.

    Entries whose time cannot be parsed are kept by the date window.
    """
    needle = action.lower() if action else None
    matches = []
    for entry in load_logs_file(path):
        if user and entry.get("user") != user:
            continue
        if needle and needle not in entry.get("action", "").lower():
            continue
        when = entry_time(entry) if (start or end) else None
        if when is not None and ((start and when < start) or (end and when > end)):
            continue
        matches.append(entry)
    return matches


def write_logs_csv(logs, fh):
    w = csv.writer(fh)
    w.writerow(CSV_FIELDS)
    for e in logs:
        w.writerow([e.get(k) for k in CSV_FIELDS])
