"""Detect login walls, captchas and order confirmations in storefront pages."""
import re
import logging

logger = logging.getLogger(__name__)


def is_captcha_page(html: str | None) -> bool:
    """Detect a bot challenge (captcha / "are you human" interstitial)."""
    if not html:
        return False
    html_lower = html.lower()
    indicators = [
        r"g-recaptcha",
        r"h-captcha",
        r"cf-challenge",
        r"challenge-platform",
        r"ben je een robot",
        r"are you a robot",
        r"verify you are human",
    ]
    return any(re.search(pattern, html_lower) for pattern in indicators)


def is_login_page(html: str | None, final_url: str) -> bool:
    """
    Detect if a page is a login form.
    Returns True if at least one condition is met:
    - final_url points at a login route
    - HTML contains a password field or a login form marker
    - HTML contains at least two weak indicators ("inloggen", "wachtwoord", ...)
    """
    url_lower = final_url.lower()
    if "/login" in url_lower or "/account/login" in url_lower or "inloggen" in url_lower:
        return True

    if not html:
        return False

    html_lower = html.lower()

    strong_indicators = [
        r'<input[^>]+type=["\']password["\']',
        r'<form[^>]+(id|class|name)=["\'][^"\']*login[^"\']*["\']',
        r'data-test=["\']login-form["\']',
    ]
    for pattern in strong_indicators:
        if re.search(pattern, html_lower):
            return True

    weak_indicators = [
        "inloggen",
        "wachtwoord",
        "log in",
        "sign in",
        "e-mailadres",
    ]
    count = sum(1 for indicator in weak_indicators if indicator in html_lower)
    return count >= 2


def extract_order_reference(html: str | None) -> str | None:
    """Find an order number on a confirmation page ("Bestelnummer: 1234-5678")."""
    if not html:
        return None
    patterns = [
        r"bestelnummer[^0-9a-z]{0,20}([0-9][0-9a-z\-]{3,})",
        r"ordernummer[^0-9a-z]{0,20}([0-9][0-9a-z\-]{3,})",
        r"order (?:number|no\.?|#)[^0-9a-z]{0,20}([0-9][0-9a-z\-]{3,})",
    ]
    text = re.sub(r"<[^>]+>", " ", html).lower()
    for pattern in patterns:
        match = re.search(pattern, text)
        if match:
            return match.group(1).upper()
    return None
