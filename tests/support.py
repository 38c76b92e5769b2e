"""Shared constants and doubles for the test suite."""

import time

import pyotp

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"
)


def wrong_totp_code(secret):
    """A six-digit code outside the accepted window for ``secret``."""
    totp = pyotp.TOTP(secret)
    now = time.time()
    accepted = {totp.at(now + step * 30) for step in (-1, 0, 1)}
    candidate = 0
    while f"{candidate:06d}" in accepted:
        candidate += 1
    return f"{candidate:06d}"


class RecordingNotifier:
    """Captures outgoing notifications instead of sending them."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, **kwargs):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((kind, kwargs))
        return True

    def kinds(self):
        return [kind for kind, _ in self.sent]

    def send_new_device_alert(self, to_email, *, device_info, ip_address, timestamp):
        return self._record(
            "new_device",
            to=to_email,
            device_info=device_info,
            ip_address=ip_address,
            timestamp=timestamp,
        )

    def send_verification_email(self, to_email, token):
        return self._record("verification", to=to_email, token=token)

    def send_password_changed_email(self, to_email):
        return self._record("password_changed", to=to_email)

    def send_password_reset_email(self, to_email, token):
        return self._record("password_reset", to=to_email, token=token)


