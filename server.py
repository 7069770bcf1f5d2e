"""
TEE TIME AGGREGATOR - ForeUP tee time search API

Aggregates live tee times from Tulsa-area courses that all book through
ForeUP:
- LaFortune Park
- Battle Creek
- Page Belcher (Stone Creek / Olde Page)
- Cherokee Hills
- South Lakes

Single-file Flask app. Upstream responses are cached in memory (5 minutes
for tee times, 24 hours for discovered schedule ids); nothing is persisted.
"""

import json
import os
import re
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify, request
from flask_cors import CORS

# =============================================================================
# CONFIG
# =============================================================================
PORT = int(os.environ.get("PORT", 3001))
FOREUP_BASE_URL = os.environ.get("FOREUP_BASE_URL", "https://foreupsoftware.com")
COURSES_FILE = os.environ.get("COURSES_FILE")

TEE_TIME_CACHE_TTL = int(os.environ.get("TEE_TIME_CACHE_TTL", 300))
SCHEDULE_CACHE_TTL = int(os.environ.get("SCHEDULE_CACHE_TTL", 86400))
CACHE_SWEEP_MINUTES = int(os.environ.get("CACHE_SWEEP_MINUTES", 10))

TEE_TIME_TIMEOUT = float(os.environ.get("TEE_TIME_TIMEOUT", 15))
DISCOVERY_TIMEOUT = float(os.environ.get("DISCOVERY_TIMEOUT", 15))
MAX_WORKERS = int(os.environ.get("MAX_WORKERS", 8))

DEFAULT_PLAYERS = 2
API_KEY = "no_limits"

# ForeUP serves a different page (or nothing) to non-browser clients
USER_AGENT = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36'


# =============================================================================
# COURSE REGISTRY
# =============================================================================
def get_seed_courses():
    """
    Seed registry keyed by course key.

    courseId is the ForeUP facility id; schedule ids come from the booking
    widget URLs. A schedule with id None is resolved at request time by
    scraping the facility's booking page.
    """
    return {
        "lafortune": {
            "name": "LaFortune Park",
            "courseId": 20922,
            "schedules": [{"id": 6194, "label": "Championship (18 holes)"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/20922/6194#teetimes",
        },
        "battlecreek": {
            "name": "Battle Creek",
            "courseId": 22756,
            "schedules": [{"id": 11838, "label": "Battle Creek"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/index/22756#teetimes",
        },
        "stonecreek": {
            "name": "Page Belcher - Stone Creek",
            "courseId": 22842,
            "schedules": [{"id": 12128, "label": "Stone Creek"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/22842/12128#/teetimes",
        },
        "oldepage": {
            "name": "Page Belcher - Olde Page",
            "courseId": 22842,
            "schedules": [{"id": 12126, "label": "Olde Page"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/22842/12126#/teetimes",
        },
        "cherokeehills": {
            "name": "Cherokee Hills",
            "courseId": 21188,
            "schedules": [{"id": 7193, "label": "Cherokee Hills"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/21188/7193#/teetimes",
        },
        "southlakes": {
            "name": "South Lakes",
            "courseId": 20923,
            "schedules": [{"id": 6195, "label": "South Lakes"}],
            "bookingUrl": "https://foreupsoftware.com/index.php/booking/20923/6195#/teetimes",
        },
    }


def load_courses(path=None):
    """Load the course registry, from COURSES_FILE when one is configured"""
    path = path or COURSES_FILE
    if not path:
        return _with_keys(get_seed_courses())

    try:
        with open(path) as f:
            courses = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        print(f"⚠️  Failed to read {path}: {e}")
        return _with_keys(get_seed_courses())

    if not isinstance(courses, dict) or not courses:
        print(f"⚠️  {path} must be a non-empty object keyed by course key, using seed courses")
        return _with_keys(get_seed_courses())

    try:
        return _with_keys(courses)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        print(f"⚠️  Bad course entry in {path}: {e}, using seed courses")
        return _with_keys(get_seed_courses())


def _with_keys(courses):
    registry = {}
    for key, course in courses.items():
        registry[key] = {
            "key": key,
            "name": course["name"],
            "courseId": int(course["courseId"]),
            "schedules": [
                {"id": int(s["id"]) if s.get("id") else None, "label": s.get("label", course["name"])}
                for s in course.get("schedules", [])
            ],
            "bookingUrl": course.get("bookingUrl", f"{FOREUP_BASE_URL}/index.php/booking/index/{course['courseId']}"),
        }
    return registry


COURSES = load_courses()


def get_course(key):
    """Look up a course by key; None for unknown keys"""
    if not key:
        return None
    return COURSES.get(key.strip())


def list_courses():
    return list(COURSES.values())


# =============================================================================
# IN-MEMORY TTL CACHE
# =============================================================================
class TTLCache:
    """
    Thread-safe key/value store where every entry expires after a TTL.

    Expired entries are never returned; they are dropped on read and by
    purge_expired(). The clock is injectable so tests can move time forward.
    """

    def __init__(self, name, default_ttl, clock=time.monotonic):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key, value, ttl=None):
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
        return value

    def purge_expired(self):
        """Drop expired entries and return how many were removed"""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
        if expired:
            print(f"  🧹 {self.name} cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


# =============================================================================
# FOREUP CLIENT
# =============================================================================
SCHEDULE_ID_PATTERNS = [
    # DEFAULT_FILTER on the booking page
    re.compile(r'"schedule_id"\s*:\s*(\d+)'),
    # SCHEDULES entries: {"id": 1234, "facility_id": ...}
    re.compile(r'"id"\s*:\s*(\d+)\s*,\s*"facility_id"'),
]


class ForeUpClient:
    """
    Talks to the ForeUP booking backend.

    Booking page (scraped for the schedule id):
        GET /index.php/booking/index/{course_id}

    Tee times API (the XHR the booking widget makes):
        GET /index.php/api/booking/times?
            time=all
            &date={MM-DD-YYYY}
            &holes=18
            &players={n}
            &booking_class=default
            &schedule_id={id}
            &specials_only=0
            &api_key=no_limits
    """

    def __init__(self, base_url=FOREUP_BASE_URL):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()

    def discover_schedule_id(self, course_id):
        """Scrape a facility's booking page for its schedule id; None if not found"""
        url = f"{self.base_url}/index.php/booking/index/{course_id}"
        try:
            resp = self.session.get(url, headers={"User-Agent": USER_AGENT}, timeout=DISCOVERY_TIMEOUT)
            resp.raise_for_status()
            html = resp.text
        except requests.RequestException as e:
            print(f"  ⚠️  Failed to discover schedule for course {course_id}: {e}")
            return None

        for pattern in SCHEDULE_ID_PATTERNS:
            match = pattern.search(html)
            if match:
                return int(match.group(1))

        print(f"  ⚠️  No schedule id found on booking page for course {course_id}")
        return None

    def fetch_times(self, course, schedule_id, schedule_label, date_str, players=DEFAULT_PLAYERS):
        """
        Fetch tee times for one course schedule.

        Returns a list of tee time records, or None when the upstream call
        failed or answered with something other than a list of slots.
        """
        url = f"{self.base_url}/index.php/api/booking/times"
        params = {
            "time": "all",
            "date": date_str,
            "holes": 18,
            "players": players,
            "booking_class": "default",
            "schedule_id": schedule_id,
            "specials_only": 0,
            "api_key": API_KEY,
        }
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
            "Referer": course["bookingUrl"],
        }

        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=TEE_TIME_TIMEOUT)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            print(f"  ⚠️  Error fetching {course['name']} ({schedule_label}): {e}")
            return None

        # ForeUP answers `false` when the tee sheet is closed or not yet open
        if not isinstance(data, list):
            msg = resp.headers.get("x-message", "")
            print(f"  ℹ️  {course['name']} ({schedule_label}) returned no slot list"
                  + (f": {msg}" if msg else ""))
            return None

        return [normalize_slot(slot, course, schedule_label) for slot in data if isinstance(slot, dict)]


def normalize_slot(slot, course, schedule_label):
    """Map a ForeUP slot onto a tee time record. Values pass through untouched."""
    return {
        "course": course["name"],
        "courseKey": course["key"],
        "scheduleLabel": schedule_label,
        "time": slot.get("time"),
        "available_spots": slot.get("available_spots"),
        "green_fee": slot.get("green_fee"),
        "cart_fee": slot.get("cart_fee"),
        "players": slot.get("players") or [],
        "holes": slot.get("holes"),
        "bookingUrl": course["bookingUrl"],
    }


# =============================================================================
# AGGREGATOR
# =============================================================================
def _time_sort_key(tee_time):
    t = tee_time.get("time")
    if isinstance(t, str) and t:
        return (0, t)
    return (1, "")


def sort_by_time(tee_times):
    """Timed slots ascending by time string; slots without a time keep their order at the end"""
    return sorted(tee_times, key=_time_sort_key)


class TeeTimeAggregator:
    """Fans tee time lookups out across courses and caches what comes back"""

    def __init__(self, client=None, schedule_cache=None, times_cache=None, max_workers=MAX_WORKERS):
        self.client = client if client is not None else ForeUpClient()
        self.schedule_cache = schedule_cache if schedule_cache is not None else TTLCache("schedules", SCHEDULE_CACHE_TTL)
        self.times_cache = times_cache if times_cache is not None else TTLCache("tee_times", TEE_TIME_CACHE_TTL)
        self.max_workers = max_workers

    def resolve_schedule_id(self, course, schedule):
        if schedule.get("id"):
            return schedule["id"]

        schedule_id = self.schedule_cache.get(course["courseId"])
        if schedule_id:
            return schedule_id

        schedule_id = self.client.discover_schedule_id(course["courseId"])
        if schedule_id:
            self.schedule_cache.set(course["courseId"], schedule_id)
        return schedule_id

    def fetch_schedule_times(self, course, schedule, date_str, players=DEFAULT_PLAYERS):
        schedule_id = self.resolve_schedule_id(course, schedule)
        if not schedule_id:
            return []

        cache_key = (course["key"], schedule_id, date_str, players)
        cached = self.times_cache.get(cache_key)
        if cached is not None:
            return list(cached)

        times = self.client.fetch_times(course, schedule_id, schedule["label"], date_str, players)
        if times is None:
            return []

        self.times_cache.set(cache_key, times)
        return list(times)

    def fetch_course_times(self, course_key, date_str, players=DEFAULT_PLAYERS):
        """All schedules of one course, fetched in order; [] for unknown keys"""
        course = get_course(course_key)
        if not course:
            return []

        results = []
        for schedule in course["schedules"]:
            results.extend(self.fetch_schedule_times(course, schedule, date_str, players))
        return results

    def aggregate(self, date_str, players=DEFAULT_PLAYERS, course_keys=None):
        """Tee times across the requested courses, sorted by time"""
        if course_keys is None:
            course_keys = list(COURSES.keys())

        keys = []
        for key in course_keys:
            key = key.strip()
            if key and key not in keys and get_course(key):
                keys.append(key)

        if not keys:
            return []

        results_by_key = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(keys))) as executor:
            future_to_key = {
                executor.submit(self.fetch_course_times, key, date_str, players): key
                for key in keys
            }

            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results_by_key[key] = future.result()
                except Exception as e:
                    print(f"  ⚠️  {key}: fetch failed: {e}")
                    results_by_key[key] = []

        all_times = []
        for key in keys:
            all_times.extend(results_by_key[key])
        return sort_by_time(all_times)

    def purge_expired(self):
        return self.schedule_cache.purge_expired() + self.times_cache.purge_expired()

    def clear(self):
        self.schedule_cache.clear()
        self.times_cache.clear()

    def stats(self):
        return {
            "schedules": len(self.schedule_cache),
            "teeTimes": len(self.times_cache),
        }


aggregator = TeeTimeAggregator()


# =============================================================================
# FLASK APP
# =============================================================================
app = Flask(__name__)
CORS(app)


def parse_players(value):
    try:
        players = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PLAYERS
    return players if players > 0 else DEFAULT_PLAYERS


@app.route('/api/teetimes')
def get_tee_times():
    """Live tee times for a date across the requested courses"""
    date_str = (request.args.get("date") or "").strip()
    if not date_str:
        return jsonify({"error": "date parameter required (MM-DD-YYYY)"}), 400

    players = parse_players(request.args.get("players"))
    courses = request.args.get("courses")
    course_keys = courses.split(",") if courses else None

    try:
        times = aggregator.aggregate(date_str, players, course_keys)
    except Exception:
        print(f"⚠️  API error:\n{traceback.format_exc()}")
        return jsonify({"error": "Failed to fetch tee times"}), 500

    return jsonify({
        "date": date_str,
        "players": players,
        "count": len(times),
        "teetimes": times,
    })


@app.route('/api/courses')
def get_courses():
    return jsonify([
        {"key": c["key"], "name": c["name"], "bookingUrl": c["bookingUrl"]}
        for c in list_courses()
    ])


@app.route('/api/health')
def health():
    return jsonify({"status": "ok"})


@app.route('/api/status')
def status():
    return jsonify({
        "status": "ok",
        "totalCourses": len(COURSES),
        "cache": aggregator.stats(),
        "scheduleCacheTtl": SCHEDULE_CACHE_TTL,
        "teeTimeCacheTtl": TEE_TIME_CACHE_TTL,
    })


# =============================================================================
# SCHEDULER
# =============================================================================
def start_scheduler():
    """Sweep expired cache entries in the background"""
    scheduler = BackgroundScheduler()
    scheduler.add_job(aggregator.purge_expired, 'interval', minutes=CACHE_SWEEP_MINUTES, id='cache_sweep')
    scheduler.start()
    return scheduler


if __name__ == '__main__':
    start_scheduler()

    print(f"\n⛳ Tee Time Aggregator starting on port {PORT}")
    print(f"📍 Courses: {', '.join(COURSES.keys())}")
    print(f"⏰ Cache: tee times {TEE_TIME_CACHE_TTL}s, schedules {SCHEDULE_CACHE_TTL}s, sweep every {CACHE_SWEEP_MINUTES} min")

    app.run(host='0.0.0.0', port=PORT, debug=False)
