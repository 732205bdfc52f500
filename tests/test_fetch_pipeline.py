import datetime as dt
import threading
import time

import pytest
import requests

import gh_pr_picker as ghp

from helpers import FIXED_NOW, make_record


def _search_item(number, repo='octo/repo', **overrides):
    item = {
        'number': number,
        'title': f'Change {number}',
        'html_url': f'https://github.com/{repo}/pull/{number}',
        'repository_url': f'https://api.github.com/repos/{repo}',
        'user': {'login': 'octocat'},
        'comments': 3,
        'created_at': '2024-02-29T12:00:00Z',
        'updated_at': '2024-03-01T11:00:00Z',
        'pull_request': {'url': f'https://api.github.com/repos/{repo}/pulls/{number}'},
    }
    item.update(overrides)
    return item


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append({'url': url, 'params': params, 'timeout': timeout})
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self):
        self.closed = True


# -----------------------------
# search_pull_requests
# -----------------------------
def test_search_builds_query_and_maps_items():
    session = FakeSession(FakeResponse(payload={
        'total_count': 2,
        'incomplete_results': False,
        'items': [_search_item(7, repo='acme/api'), _search_item(3)],
    }))

    records = ghp.search_pull_requests(session, ('is:pr', 'is:open', 'author:@me'), per_page=25, timeout=5)

    call = session.calls[0]
    assert call['url'] == ghp.SEARCH_URL
    assert call['params'] == {'q': 'is:pr is:open author:@me', 'sort': 'created', 'order': 'desc', 'per_page': 25}
    assert call['timeout'] == 5
    assert [(r.repo, r.number) for r in records] == [('acme/api', 7), ('octo/repo', 3)]
    first = records[0]
    assert first.title == 'Change 7'
    assert first.author == 'octocat'
    assert first.url == 'https://github.com/acme/api/pull/7'
    assert first.comments == 3
    assert first.created_at == dt.datetime(2024, 2, 29, 12, 0, tzinfo=dt.timezone.utc)
    assert first.updated_at == dt.datetime(2024, 3, 1, 11, 0, tzinfo=dt.timezone.utc)


def test_search_skips_malformed_items():
    session = FakeSession(FakeResponse(payload={'items': [
        _search_item(1, repository_url='https://example.com/elsewhere'),
        _search_item(2, created_at=None),
        'not-a-dict',
        _search_item(4),
    ]}))

    records = ghp.search_pull_requests(session, ('is:pr',))

    assert [r.number for r in records] == [4]


def test_search_skips_item_with_non_numeric_comments():
    session = FakeSession(FakeResponse(payload={'items': [
        _search_item(1, comments='n/a'),
        _search_item(2, comments=None),
    ]}))

    records = ghp.search_pull_requests(session, ('is:pr',))

    assert [(r.number, r.comments) for r in records] == [(2, 0)]


def test_search_http_error_raises_fetch_error_with_message():
    session = FakeSession(FakeResponse(status_code=422, payload={'message': 'Validation Failed'}))

    with pytest.raises(ghp.FetchError) as excinfo:
        ghp.search_pull_requests(session, ('is:pr',))

    assert excinfo.value.status == 422
    assert 'Validation Failed' in str(excinfo.value)
    assert excinfo.value.retry_after is None


def test_search_rate_limit_reports_retry_after():
    session = FakeSession(FakeResponse(
        status_code=403,
        payload={'message': 'API rate limit exceeded'},
        headers={'Retry-After': '42'},
    ))

    with pytest.raises(ghp.FetchError) as excinfo:
        ghp.search_pull_requests(session, ('is:pr',))

    assert excinfo.value.retry_after == 42
    assert 'resets in 42s' in str(excinfo.value)


def test_search_network_failure_raises_fetch_error():
    session = FakeSession(exc=requests.exceptions.ConnectionError('boom'))

    with pytest.raises(ghp.FetchError, match='search request failed'):
        ghp.search_pull_requests(session, ('is:pr',))


def test_parse_retry_after_uses_rate_limit_reset(monkeypatch):
    monkeypatch.setattr(ghp.time, 'time', lambda: 1000)
    resp = FakeResponse(headers={'X-RateLimit-Reset': '1090'})

    assert ghp._parse_retry_after_seconds(resp) == 90
    assert ghp._parse_retry_after_seconds(None) is None


def test_make_github_search_uses_fresh_session_per_call(monkeypatch):
    sessions = []

    def fake_session(token):
        assert token == 'token'
        s = FakeSession(FakeResponse(payload={'items': [_search_item(len(sessions) + 1)]}))
        sessions.append(s)
        return s

    monkeypatch.setattr(ghp, '_session', fake_session)
    search = ghp.make_github_search('token', per_page=10, timeout=2)
    category = ghp.DEFAULT_CATEGORIES[0]

    first = search(category)
    second = search(category)

    assert len(sessions) == 2
    assert all(s.closed for s in sessions)
    assert sessions[0].calls[0]['params']['q'] == category.query
    assert sessions[0].calls[0]['params']['per_page'] == 10
    assert [r.number for r in first] == [1]
    assert [r.number for r in second] == [2]


# -----------------------------
# fetch_all_categories
# -----------------------------
def test_results_are_slotted_by_category_not_arrival(categories, clock):
    delays = {c.label: d for c, d in zip(categories, (0.15, 0.0, 0.1, 0.05))}

    def search(category):
        time.sleep(delays[category.label])
        idx = categories.index(category)
        return [make_record(number=idx * 10 + n) for n in range(idx + 1)]

    batch = ghp.fetch_all_categories(categories, search, clock=clock)

    assert [[e.number for e in rows] for rows in batch.entries] == [
        [0], [10, 11], [20, 21, 22], [30, 31, 32, 33],
    ]
    assert batch.errors == {}
    assert batch.fetched_at == clock.now


def test_one_failing_category_does_not_affect_others(categories, clock, caplog):
    failing = categories[1]

    def search(category):
        if category is failing:
            raise ghp.FetchError('HTTP 502: bad gateway')
        return [make_record(number=categories.index(category) + 1)]

    with caplog.at_level('WARNING', logger=ghp.LOGGER_NAME):
        batch = ghp.fetch_all_categories(categories, search, clock=clock)

    assert len(batch.entries) == len(categories)
    assert batch.entries[1] == []
    assert [rows[0].number for i, rows in enumerate(batch.entries) if i != 1] == [1, 3, 4]
    assert batch.errors == {failing.label: 'HTTP 502: bad gateway'}
    assert any(failing.label in rec.getMessage() for rec in caplog.records)


def test_failure_does_not_wait_for_or_cancel_slow_siblings(categories, clock):
    release = threading.Event()

    def search(category):
        if category is categories[0]:
            raise RuntimeError('instant failure')
        release.wait(timeout=2)
        return [make_record()]

    timer = threading.Timer(0.05, release.set)
    timer.start()
    try:
        batch = ghp.fetch_all_categories(categories, search, clock=clock)
    finally:
        timer.cancel()

    assert batch.entries[0] == []
    assert all(len(rows) == 1 for rows in batch.entries[1:])


def test_reference_time_taken_after_all_fetches(categories):
    calls = []

    def clock():
        calls.append('clock')
        return FIXED_NOW

    def search(category):
        calls.append(category.label)
        return [make_record(created_at=FIXED_NOW - dt.timedelta(seconds=90))]

    batch = ghp.fetch_all_categories(categories, search, clock=clock)

    assert calls[-1] == 'clock'
    assert calls.count('clock') == 1
    assert {rows[0].age for rows in batch.entries} == {'1m'}


def test_progress_callback_reports_each_category(categories, clock):
    seen = []

    def progress(done, total, message):
        seen.append((done, total, message))

    def search(category):
        if category is categories[2]:
            raise RuntimeError('nope')
        return []

    ghp.fetch_all_categories(categories, search, progress=progress, clock=clock)

    assert sorted(done for done, _total, _msg in seen) == [1, 2, 3, 4]
    assert {total for _done, total, _msg in seen} == {4}
    assert any(msg == f'Failed {categories[2].label}' for _d, _t, msg in seen)


def test_progress_callback_errors_are_contained(categories, clock):
    def progress(done, total, message):
        raise RuntimeError('render failed')

    batch = ghp.fetch_all_categories(categories, lambda c: [make_record()], progress=progress, clock=clock)

    assert all(len(rows) == 1 for rows in batch.entries)


def test_empty_category_list(clock):
    batch = ghp.fetch_all_categories([], lambda c: [], clock=clock)

    assert batch.entries == []
    assert batch.errors == {}


def test_mock_search_is_deterministic(categories):
    first = ghp.generate_mock_prs(categories[0], now=FIXED_NOW)
    second = ghp.generate_mock_prs(categories[0], now=FIXED_NOW)

    assert first == second
    assert first
    assert all(r.url.endswith(f'/pull/{r.number}') for r in first)
    assert all(r.created_at < FIXED_NOW for r in first)
