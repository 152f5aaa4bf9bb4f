import json
import os

try:
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow
except ImportError:
    Request = None
    Credentials = None
    InstalledAppFlow = None

from tidemail.constants import GOOGLE_AUTH_URI, GOOGLE_TOKEN_URI, SCOPES


class GoogleIdentity:
    """Google OAuth token source with a silent and an interactive path."""

    def __init__(self, config=None, scopes=None):
        self.config = config
        self.scopes = list(scopes or SCOPES)
        self.client_config = None

    @property
    def loaded(self):
        return self.client_config is not None

    def load(self):
        """Resolve the OAuth client configuration once."""
        if self.loaded:
            return
        if InstalledAppFlow is None or Credentials is None:
            raise RuntimeError(
                "Missing required dependencies for GoogleIdentity: google-auth, google-auth-oauthlib"
            )
        self.client_config = self._resolve_client_config()

    def _resolve_client_config(self):
        get = self.config.get if self.config is not None else (lambda _key, default=None: default)
        client_id = (get("client_id") or "").strip()
        client_secret = (get("client_secret") or "").strip()
        if client_id:
            return {
                "installed": {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "auth_uri": GOOGLE_AUTH_URI,
                    "token_uri": GOOGLE_TOKEN_URI,
                    "redirect_uris": ["http://localhost"],
                }
            }

        secrets_file = get("client_secrets_file")
        if secrets_file and os.path.exists(secrets_file):
            with open(secrets_file, "r", encoding="utf-8") as f:
                payload = json.load(f)
            if isinstance(payload, dict) and ("installed" in payload or "web" in payload):
                return payload
            raise RuntimeError(f"Unrecognised OAuth client secrets file: {secrets_file}")

        raise RuntimeError(
            "Google client ID is not configured. Set client_id/client_secret in the config "
            "file or provide a client secrets file."
        )

    def _client_section(self):
        return self.client_config.get("installed") or self.client_config.get("web") or {}

    def silent(self, refresh_token):
        """Exchange a stored refresh token for a new access token without user interaction."""
        section = self._client_section()
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=section.get("token_uri") or GOOGLE_TOKEN_URI,
            client_id=section.get("client_id"),
            client_secret=section.get("client_secret"),
            scopes=self.scopes,
        )
        creds.refresh(Request())
        return creds

    def interactive(self):
        """Open the consent screen in the browser and wait for the grant."""
        flow = InstalledAppFlow.from_client_config(self.client_config, self.scopes)
        return flow.run_local_server(port=0, prompt="consent")
