"""Tests for the notification senders."""

import json

import pytest
import requests

from orbitd import notify


class FakeResponse:

    def __init__(self, status=200):
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def posts(monkeypatch):
    calls = []

    def post(url, data=None, headers=None, timeout=None):
        calls.append(('POST', url, data, headers))
        return FakeResponse()

    monkeypatch.setattr(notify.requests, 'post', post)
    return calls


def _payload(event=notify.EVENT_UPDATED, error=''):
    return notify._build_payload('web', 'nginx:1.25', 'nginx:1.26', event, error)


class TestNtfy:

    def test_update_message(self, posts):
        assert notify.send_ntfy({'url': 'https://ntfy.sh/t', 'priority': 'low'}, _payload())
        _, url, data, headers = posts[0]
        assert url == 'https://ntfy.sh/t'
        assert headers['Title'] == 'orbitd: web updated'
        assert headers['Priority'] == 'low'
        assert 'nginx:1.26' in data.decode('utf-8')

    def test_down_is_urgent(self, posts):
        notify.send_ntfy({'url': 'https://ntfy.sh/t', 'priority': 'min'},
                         _payload(notify.EVENT_DOWN, 'rename failed'))
        headers = posts[0][3]
        assert headers['Priority'] == 'urgent'
        assert 'DOWN' in headers['Title']

    def test_rollback_is_high(self, posts):
        notify.send_ntfy({'url': 'https://ntfy.sh/t'}, _payload(notify.EVENT_ROLLED_BACK, 'start failed'))
        assert posts[0][3]['Priority'] == 'high'

    def test_extra_headers(self, posts):
        notify.send_ntfy({'url': 'https://ntfy.sh/t', 'headers': {'Authorization': 'Bearer x'}}, _payload())
        assert posts[0][3]['Authorization'] == 'Bearer x'

    def test_missing_url(self, posts):
        assert not notify.send_ntfy({'url': ' '}, _payload())
        assert posts == []


class TestWebhook:

    def test_raw_payload(self, posts):
        assert notify.send_webhook({'url': 'https://hooks.example.com/x'}, _payload())
        method, _, data, headers = posts[0]
        assert method == 'POST'
        assert headers['Content-Type'] == 'application/json'
        assert json.loads(data) == {
            'event': 'container_updated',
            'container': 'web',
            'old_image': 'nginx:1.25',
            'new_image': 'nginx:1.26',
            'error': '',
            'summary': 'orbitd: web updated',
        }

    def test_body_template(self, posts):
        cfg = {
            'url': 'https://hooks.example.com/x',
            'headers': {'X-Token': 'abc'},
            'body_template': '{"text": "$container -> $new_image ($event) $unknown"}',
        }
        notify.send_webhook(cfg, _payload())
        _, _, data, headers = posts[0]
        assert headers['X-Token'] == 'abc'
        assert data.decode() == '{"text": "web -> nginx:1.26 (container_updated) $unknown"}'

    def test_summary_names_down_event(self, posts):
        cfg = {'url': 'https://hooks.example.com/x', 'body_template': '$summary: $error'}
        notify.send_webhook(cfg, _payload(notify.EVENT_DOWN, 'rename failed'))
        assert posts[0][2].decode() == 'orbitd: web is DOWN: rename failed'


class TestDispatch:

    def test_empty_config_sends_nothing(self, posts):
        notify.send_notifications({}, 'web', 'a', 'b', notify.EVENT_UPDATED)
        notify.send_notifications(None, 'web', 'a', 'b', notify.EVENT_UPDATED)
        assert posts == []

    def test_all_channels(self, posts):
        cfg = {'ntfy': {'url': 'https://ntfy.sh/t'}, 'webhook': {'url': 'https://hooks.example.com/x'}}
        notify.send_notifications(cfg, 'web', 'a', 'b', notify.EVENT_UPDATED)
        assert [c[1] for c in posts] == ['https://ntfy.sh/t', 'https://hooks.example.com/x']

    def test_failures_are_swallowed(self, monkeypatch):
        attempted = []

        def post(url, **kwargs):
            attempted.append(url)
            if 'ntfy' in url:
                raise requests.ConnectionError('refused')
            raise RuntimeError('unexpected')

        monkeypatch.setattr(notify.requests, 'post', post)
        cfg = {'ntfy': {'url': 'https://ntfy.sh/t'}, 'webhook': {'url': 'https://hooks.example.com/x'}}

        notify.send_notifications(cfg, 'web', 'a', 'b', notify.EVENT_DOWN, 'boom')

        assert attempted == ['https://ntfy.sh/t', 'https://hooks.example.com/x']

    def test_http_error_returns_false(self, monkeypatch):
        monkeypatch.setattr(notify.requests, 'post', lambda *a, **kw: FakeResponse(503))
        assert not notify.send_ntfy({'url': 'https://ntfy.sh/t'}, _payload())
