"""Apple Developer URLs, identity-provider hosts, CSS selectors and token patterns."""

import re

# ── URLs ─────────────────────────────────────────────────────────────────────

DEVELOPER_BASE = "https://developer.apple.com/"
MAPS_TOKENS_URL = "https://developer.apple.com/account/resources/services/maps-tokens"
MAPS_TOKENS_PATH = "maps-tokens"

# Hosts of the Apple ID sign-in flow; any URL containing one is a login page
LOGIN_HOSTS = ("idmsa.apple.com", "appleid.apple.com")

# ── Login form ───────────────────────────────────────────────────────────────

SELECTORS = {
    "account_name": "#account_name_text_field",
    "password": "#password_text_field",
    "sign_in": "#sign-in",
    "remember_me": "#remember-me",
    "remember_me_label": "#remember-me-label",
    "login_error": '.form-message-wrapper, .error, [role="alert"]',
}

SECOND_FACTOR_SELECTORS = [
    ".form-security-code-input",
    "#security-code",
    'input[name="security-code"]',
]

SECOND_FACTOR_SUBMIT_SELECTORS = [
    'button:has-text("继续")',
    'button:has-text("验证")',
    'button:has-text("Trust")',
    'button:has-text("Continue")',
    'button:has-text("Verify")',
]

TRUST_BROWSER_SELECTORS = [
    'button:has-text("信任")',
    'button:has-text("Trust")',
    'button.button-rounded-rectangle:has-text("信任")',
]

VERIFICATION_CODE_PATTERN = re.compile(r"[0-9]{6}")

# ── Token page ───────────────────────────────────────────────────────────────

TOKEN_SELECTORS = [
    "textarea[readonly]",
    "pre code",
    "code",
    ".token-value",
    'input[readonly][value*="eyJ"]',
]

# Signed tokens are JWTs; the header always base64-encodes to "eyJ"
TOKEN_PREFIX = "eyJ"
TOKEN_MIN_LENGTH = 100
TOKEN_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")

TOKEN_WIZARD = {
    "add_button": 'svg[color="#0070c9"]',
    "token_type": 'input[name="tokenType"][value="serverAPI"]',
    "restriction": 'input[name="tokenEnvironment"][value="test"]',
    "description": 'input[placeholder*="Description"]',
    "create": 'button:has-text("Create")',
    "token_list_item": ".limit-name",
}

TOKEN_DESCRIPTION_PREFIX = "auto-refresh"

# ── Token table ──────────────────────────────────────────────────────────────

# Columns: DOMAINS | DESCRIPTION | TOKEN | CREATION | EXPIRATION | ACTION
TOKEN_TABLE_ROWS = "table tbody tr"
DESCRIPTION_COLUMN = 1
EXPIRATION_COLUMN = 4
REVOKE_BUTTON = ".action-remove"
REVOKE_CONFIRM_BUTTON = "#action-confirm"
