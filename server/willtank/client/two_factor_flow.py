"""Client-side two-factor enrollment flow.

Holds what a browser client would cache between API calls: the reported
status, the unconfirmed secret while the user scans it, and the backup codes
returned once on enablement. Transitions::

    DISABLED --generate_secret--> SECRET_GENERATED --verify_and_enable--> ENABLED
    SECRET_GENERATED --discard_secret--> DISABLED   (no server call)
    ENABLED --disable--> DISABLED

A failed verification keeps the flow in SECRET_GENERATED so the user can
retry with the same secret.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import httpx

CSRF_COOKIE = "willtank_csrf"


class FlowState(str, enum.Enum):
    DISABLED = "disabled"
    SECRET_GENERATED = "secretGenerated"
    ENABLED = "enabled"


class TwoFactorFlowError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidTransition(TwoFactorFlowError):
    pass


@dataclass(frozen=True)
class PendingSecret:
    secret: str
    qr_code: str
    otp_auth_url: str


class TwoFactorEnrollmentFlow:
    def __init__(self, http: httpx.Client, *, base_path: str = "/api/2fa"):
        self.http = http
        self.base_path = base_path.rstrip("/")
        self.state = FlowState.DISABLED
        self.pending: PendingSecret | None = None
        self.last_error: str | None = None
        self._backup_codes: list[str] | None = None

    def _headers(self) -> dict[str, str]:
        csrf = self.http.cookies.get(CSRF_COOKIE)
        return {"X-CSRF-Token": csrf} if csrf else {}

    def _post(self, path: str, body: dict | None = None) -> dict:
        r = self.http.post(f"{self.base_path}{path}", json=body or {}, headers=self._headers())
        return self._json_or_raise(r)

    def _json_or_raise(self, r: httpx.Response) -> dict:
        if r.status_code >= 400:
            try:
                detail = r.json().get("detail")
            except ValueError:
                detail = None
            raise TwoFactorFlowError(str(detail or f"request failed with status {r.status_code}"), r.status_code)
        return r.json()

    def _require(self, *states: FlowState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransition(f"not allowed in state {self.state.value} (expected {allowed})")

    def refresh(self) -> FlowState:
        data = self._json_or_raise(self.http.get(f"{self.base_path}/status"))
        self.pending = None
        self.state = FlowState.ENABLED if data.get("enabled") is True else FlowState.DISABLED
        return self.state

    def generate_secret(self) -> PendingSecret:
        self._require(FlowState.DISABLED, FlowState.SECRET_GENERATED)
        data = self._post("/generate")
        self.pending = PendingSecret(secret=data["secret"], qr_code=data["qrCode"], otp_auth_url=data["otpAuthUrl"])
        self.last_error = None
        self.state = FlowState.SECRET_GENERATED
        return self.pending

    def discard_secret(self) -> None:
        self._require(FlowState.SECRET_GENERATED)
        self.pending = None
        self.state = FlowState.DISABLED

    def verify_and_enable(self, token: str) -> list[str]:
        self._require(FlowState.SECRET_GENERATED)
        try:
            data = self._post("/verify", {"token": token})
        except TwoFactorFlowError as e:
            self.last_error = str(e)
            raise

        self.last_error = None
        self.pending = None
        self._backup_codes = list(data.get("backupCodes") or [])
        self.state = FlowState.ENABLED
        return list(self._backup_codes)

    def take_backup_codes(self) -> list[str] | None:
        """Hand over the codes returned at enablement, once."""
        codes, self._backup_codes = self._backup_codes, None
        return codes

    def disable(self, password: str, token: str | None = None) -> None:
        self._require(FlowState.ENABLED)
        body = {"password": password}
        if token:
            body["token"] = token
        self._post("/disable", body)
        self._backup_codes = None
        self.state = FlowState.DISABLED
