import pytest
import requests

import server


class FakeResponse:
    def __init__(self, json_data=None, status_code=200, text=None, headers=None, bad_json=False):
        self._json = json_data
        self.status_code = status_code
        self.text = text if text is not None else ""
        self.headers = headers or {}
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeForeUp:
    """Stands in for the client's requests.Session and records every call"""

    def __init__(self):
        self.calls = []
        self.times = {}
        self.pages = {}

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})

        if url.endswith("/api/booking/times"):
            answer = self.times.get(params["schedule_id"], [])
        else:
            answer = self.pages.get(int(url.rsplit("/", 1)[1]), FakeResponse(text="<html></html>"))

        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse(json_data=answer)

    def times_calls(self, schedule_id=None):
        return [
            c for c in self.calls
            if c["url"].endswith("/api/booking/times")
            and (schedule_id is None or c["params"]["schedule_id"] == schedule_id)
        ]

    def page_calls(self, course_id):
        return [c for c in self.calls if c["url"].endswith(f"/booking/index/{course_id}")]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def _clear_caches():
    server.aggregator.clear()
    yield
    server.aggregator.clear()


@pytest.fixture
def foreup(monkeypatch):
    fake = FakeForeUp()
    monkeypatch.setattr(server.aggregator.client, "session", fake)
    return fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    server.app.config["TESTING"] = True
    return server.app.test_client()


@pytest.fixture
def undiscovered_course(monkeypatch):
    course = {
        "key": "mohawk",
        "name": "Mohawk Park",
        "courseId": 30001,
        "schedules": [{"id": None, "label": "Woodbine"}],
        "bookingUrl": "https://foreupsoftware.com/index.php/booking/index/30001#teetimes",
    }
    monkeypatch.setitem(server.COURSES, "mohawk", course)
    return course
