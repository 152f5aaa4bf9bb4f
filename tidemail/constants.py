GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_BATCH_URL = "https://gmail.googleapis.com/batch"
GMAIL_BATCH_PATH = "/gmail/v1/users/me"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "openid",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]

BATCH_SIZE = 10
BATCH_DELAY_SEC = 0.3
BATCH_MESSAGE_FIELDS = "id,threadId,snippet,labelIds,payload(headers,parts)"
BATCH_METADATA_HEADERS = ("From", "Subject", "Date")

TOKEN_EXPIRY_MARGIN_SEC = 5
TOKEN_RENEWAL_LEAD_SEC = 10
DEFAULT_TOKEN_LIFETIME_SEC = 3600

DEFAULT_PAGE_SIZE = 25
DEFAULT_LABEL_ID = "INBOX"

STORAGE_KEY_PREFIX = "tidemail_"
SESSION_KEY_CREDENTIAL = "credential"
SESSION_KEY_HINT = "sessionHint"
SESSION_KEY_LABEL_VISIBILITY = "labelVisibility"

UNREAD_LABEL_ID = "UNREAD"
STARRED_LABEL_ID = "STARRED"

# Sidebar order for system labels; anything not listed sorts after these.
SYSTEM_LABEL_ORDER = (
    "INBOX",
    "STARRED",
    "IMPORTANT",
    "SENT",
    "DRAFT",
    "CHAT",
    "CATEGORY_PERSONAL",
    "CATEGORY_SOCIAL",
    "CATEGORY_PROMOTIONS",
    "CATEGORY_UPDATES",
    "CATEGORY_FORUMS",
    "SPAM",
    "TRASH",
    "UNREAD",
)

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024 * 1024
