import datetime as dt
from types import SimpleNamespace

import gh_pr_picker as ghp


FIXED_NOW = dt.datetime(2024, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    """Controllable replacement for the module's UTC clock."""

    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + dt.timedelta(seconds=seconds)


def make_record(repo='octo/repo', number=1, title='Fix the thing', **overrides):
    base = dict(
        repo=repo,
        number=number,
        title=title,
        author='octocat',
        url=f'https://github.com/{repo}/pull/{number}',
        comments=0,
        created_at=FIXED_NOW - dt.timedelta(hours=2),
        updated_at=FIXED_NOW - dt.timedelta(minutes=5),
    )
    base.update(overrides)
    return ghp.PullRequestRecord(**base)


def make_entry(repo='octo/repo', number=1, **overrides):
    base = dict(
        repo=repo,
        number=number,
        title=f'PR {number}',
        author='octocat',
        url=f'https://github.com/{repo}/pull/{number}',
        comments=0,
        age='2h',
        updated_since='5m',
    )
    base.update(overrides)
    return ghp.DisplayEntry(**base)


def make_batch(counts, repo='octo/repo'):
    """One list of entries per category; numbers encode (category, row)."""
    return [
        [make_entry(repo=repo, number=cat * 100 + row) for row in range(count)]
        for cat, count in enumerate(counts)
    ]


def dummy_event(app=None):
    return SimpleNamespace(app=app or SimpleNamespace(exit=lambda: None))


__all__ = [
    'FIXED_NOW',
    'FakeClock',
    'make_record',
    'make_entry',
    'make_batch',
    'dummy_event',
]
