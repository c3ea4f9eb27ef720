"""
Notification senders for orbitd: ntfy.sh and generic outgoing webhook.

Failures are always logged as warnings and never re-raised so that a broken
notification channel cannot interrupt the update cycle.
"""

import json
import logging
import string
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}

EVENT_UPDATED = 'container_updated'
EVENT_ROLLED_BACK = 'rollback_succeeded'
EVENT_DOWN = 'container_down'


def _build_payload(container: str, old_image: str, new_image: str,
                   event: str, error: str) -> Dict[str, Any]:
    """Return the standard dict passed to every sender."""
    return {
        'event': event,
        'container': container,
        'old_image': old_image,
        'new_image': new_image,
        'error': error,
    }


def _ntfy_message(payload: Dict[str, Any]):
    container = payload['container']
    event = payload['event']
    if event == EVENT_DOWN:
        return (f"orbitd: {container} is DOWN",
                f"Update to {payload['new_image']} failed and rollback failed: "
                f"{payload['error']}. Manual intervention required.",
                'urgent')
    if event == EVENT_ROLLED_BACK:
        return (f"orbitd: {container} update rolled back",
                f"Update to {payload['new_image']} failed, {payload['old_image']} restored: "
                f"{payload['error']}",
                'high')
    return (f"orbitd: {container} updated",
            f"{payload['old_image']} → {payload['new_image']}",
            None)


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
        priority (optional) min / low / default / high / urgent  (default: default);
                 failures are always sent at least at high priority
        headers  (optional) Extra HTTP headers dict (e.g. {"Authorization": "Bearer token"})
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    title, message, event_priority = _ntfy_message(payload)

    priority = event_priority or cfg.get('priority', 'default')
    if priority not in _NTFY_PRIORITIES:
        priority = 'default'

    headers: Dict[str, str] = {
        'Title': title,
        'Priority': priority,
        'Tags': 'whale',
        'Content-Type': 'text/plain',
    }
    for k, v in (cfg.get('headers') or {}).items():
        headers[str(k)] = str(v)

    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                 headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("ntfy: notification sent for %s", payload['container'])
        return True
    except requests.RequestException as e:
        logger.warning("ntfy: failed to send notification: %s", e)
        return False


def _webhook_body(payload: Dict[str, Any], template: Optional[str]) -> bytes:
    """JSON payload plus a one-line ``summary``, or ``template`` filled from the same fields."""
    fields = dict(payload, summary=_ntfy_message(payload)[0])
    if not template:
        return json.dumps(fields).encode('utf-8')
    # Unknown $names are left as written
    return string.Template(template).safe_substitute(fields).encode('utf-8')


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a container event to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        headers       (optional) Extra request headers
        body_template (optional) string.Template body with $event, $container,
                      $old_image, $new_image, $error and $summary
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    headers = {'Content-Type': 'application/json'}
    headers.update({str(k): str(v) for k, v in (cfg.get('headers') or {}).items()})

    try:
        response = requests.post(url, data=_webhook_body(payload, cfg.get('body_template')),
                                 headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("webhook: %s sent for %s", payload['event'], payload['container'])
        return True
    except requests.RequestException as e:
        logger.warning("webhook: failed to send notification: %s", e)
        return False


_SENDERS = (('ntfy', send_ntfy), ('webhook', send_webhook))


def send_notifications(notif_cfg: Optional[Dict[str, Any]], container: str,
                       old_image: str, new_image: str, event: str,
                       error: str = '') -> None:
    """Send one container event to every configured channel. Never raises."""
    if not notif_cfg:
        return

    payload = _build_payload(container, old_image, new_image, event, error)
    for channel, sender in _SENDERS:
        channel_cfg = notif_cfg.get(channel)
        if not (channel_cfg and channel_cfg.get('url')):
            continue
        try:
            sender(channel_cfg, payload)
        except Exception as e:
            logger.warning("%s: unexpected error: %s", channel, e)
