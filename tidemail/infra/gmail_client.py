from dataclasses import dataclass, field

try:
    import requests
except ImportError:
    requests = None

from tidemail.constants import GMAIL_BASE, GMAIL_BATCH_URL, UNREAD_LABEL_ID
from tidemail.errors import AuthorizationError, ExternalServiceError, ValidationError


@dataclass
class MessageListPage:
    """One page of the remote message list: id stubs plus the continuation cursor."""

    stubs: list = field(default_factory=list)
    next_page_token: str | None = None
    total: int = 0


def _require_id(value, what):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"A non-empty {what} id is required.")
    return value


class GmailClient:
    """Gmail REST client; every call carries a bearer token from the credential manager."""

    def __init__(self, credentials, session=None, request_timeout=None):
        if session is None and requests is None:
            raise RuntimeError("Missing required dependencies for GmailClient: requests")
        self.credentials = credentials
        self.session = session if session is not None else requests.Session()
        self.request_timeout = request_timeout

    def _headers(self, force_refresh=False, content_type="application/json"):
        token = self.credentials.get_credential(force_refresh=force_refresh).access_token
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": content_type,
            "Accept": "application/json",
        }

    @staticmethod
    def _json_or_error(response, endpoint):
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"Invalid JSON response from Gmail endpoint: {endpoint}") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError(f"Unexpected JSON shape from Gmail endpoint: {endpoint}")
        return payload

    def _request(self, method, url, params=None, data=None, body=None, content_type="application/json"):
        auth_retried = False

        while True:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(force_refresh=auth_retried, content_type=content_type),
                params=params,
                json=data,
                data=body,
                timeout=self.request_timeout,
            )

            if resp.status_code == 401:
                if auth_retried:
                    raise AuthorizationError(f"Gmail rejected the bearer token for {url}")
                auth_retried = True
                continue

            resp.raise_for_status()
            return resp

    def _get(self, url, params=None):
        return self._json_or_error(self._request("GET", url, params=params), url)

    def _post(self, url, data):
        return self._request("POST", url, data=data)

    def _patch(self, url, data):
        return self._request("PATCH", url, data=data)

    def list_messages(self, label_id=None, page_size=25, page_token=None):
        params = {"maxResults": str(page_size)}
        if page_token:
            params["pageToken"] = page_token
        if label_id:
            params["labelIds"] = label_id
        url = f"{GMAIL_BASE}/messages"
        data = self._get(url, params=params)

        stubs = data.get("messages") or []
        if not isinstance(stubs, list):
            raise ExternalServiceError("Malformed message list payload: expected list in 'messages'.")
        total = data.get("resultSizeEstimate")
        return MessageListPage(
            stubs=[s for s in stubs if isinstance(s, dict) and s.get("id")],
            next_page_token=data.get("nextPageToken") or None,
            total=total if isinstance(total, int) else 0,
        )

    def list_labels(self):
        data = self._get(f"{GMAIL_BASE}/labels")
        return data.get("labels") or []

    def patch_label_visibility(self, label_id, visible):
        _require_id(label_id, "label")
        payload = {"labelListVisibility": "labelShow" if visible else "labelHide"}
        resp = self._patch(f"{GMAIL_BASE}/labels/{label_id}", payload)
        return self._json_or_error(resp, f"labels/{label_id}")

    def get_message(self, message_id):
        _require_id(message_id, "message")
        return self._get(f"{GMAIL_BASE}/messages/{message_id}", params={"format": "full"})

    def get_thread_messages(self, thread_id):
        _require_id(thread_id, "thread")
        data = self._get(f"{GMAIL_BASE}/threads/{thread_id}")
        messages = data.get("messages") or []
        return [m for m in messages if isinstance(m, dict)]

    def get_attachment_data(self, message_id, attachment_id):
        """Attachment payload as standard (not url-safe) base64 text."""
        _require_id(message_id, "message")
        _require_id(attachment_id, "attachment")
        data = self._get(f"{GMAIL_BASE}/messages/{message_id}/attachments/{attachment_id}")
        return (data.get("data") or "").replace("-", "+").replace("_", "/")

    def modify_message_labels(self, message_id, add_label_ids=None, remove_label_ids=None):
        _require_id(message_id, "message")
        payload = {
            "addLabelIds": list(add_label_ids or []),
            "removeLabelIds": list(remove_label_ids or []),
        }
        resp = self._post(f"{GMAIL_BASE}/messages/{message_id}/modify", payload)
        return self._json_or_error(resp, f"messages/{message_id}/modify")

    def mark_read(self, message_ids, as_read=True):
        ids = [message_id for message_id in message_ids or [] if message_id]
        if not ids:
            return
        payload = {"ids": ids}
        if as_read:
            payload["removeLabelIds"] = [UNREAD_LABEL_ID]
        else:
            payload["addLabelIds"] = [UNREAD_LABEL_ID]
        # batchModify answers 204 No Content.
        self._post(f"{GMAIL_BASE}/messages/batchModify", payload)

    def post_batch(self, body, boundary):
        resp = self._request(
            "POST",
            GMAIL_BATCH_URL,
            body=body.encode("utf-8"),
            content_type=f"multipart/mixed; boundary={boundary}",
        )
        return resp.text

    def close(self):
        session = getattr(self, "session", None)
        if session is not None:
            session.close()
            self.session = None
