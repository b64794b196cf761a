from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
import structlog

from .errors import (
    ExternalPermanentError, ExternalTransientError, InvalidInput
)
from .helpers import now_ts, to_iso

logger = structlog.get_logger(__name__)


def target_email(input_data: Optional[dict], label: str) -> str:
    data = input_data or {}
    email = (data.get("email") or data.get("target_email") or "").strip()
    if not email:
        raise InvalidInput(
            f"Target email is required for {label} invite"
        )
    return email


# ----------------------------
# Invite Provider Interface
# ----------------------------
class InviteProvider(ABC):
    slug = "manual"

    def check_input(self, input_data: dict) -> None:
        """Raise ``InvalidInput`` before any account is reserved."""

    # account: provider_accounts row as a dict (credentials decoded)
    @abstractmethod
    async def send_invite(self, account: dict, input_data: dict) -> dict:
        ...


class ChatGPTInviteProvider(InviteProvider):
    """ChatGPT Team workspace invites through the account invite API."""

    slug = "chatgpt"

    def __init__(self, http: httpx.AsyncClient,
                 base_url: str = "https://chatgpt.com"):
        self.http = http
        self.base_url = base_url.rstrip("/")

    def _headers(self, creds: dict) -> Dict[str, str]:
        headers = {
            "accept": "*/*",
            "authorization": f"Bearer {creds['token']}",
            "chatgpt-account-id": creds["account_id"],
            "content-type": "application/json",
            "origin": self.base_url,
            "referer": f"{self.base_url}/",
        }
        optional = {
            "device_id": "oai-device-id",
            "client_version": "oai-client-version",
            "build_number": "oai-client-build-number",
            "cookies": "cookie",
        }
        for key, header in optional.items():
            if creds.get(key):
                headers[header] = str(creds[key])
        return headers

    def check_input(self, input_data: dict) -> None:
        target_email(input_data, "ChatGPT")

    async def send_invite(self, account: dict, input_data: dict) -> dict:
        email = target_email(input_data, "ChatGPT")
        creds = account.get("credentials") or {}
        if not creds.get("account_id") or not creds.get("token"):
            raise ExternalPermanentError(
                "Missing required credentials (account_id, token)"
            )
        url = (f"{self.base_url}/backend-api/accounts/"
               f"{creds['account_id']}/invites")
        payload = {
            "email_addresses": [email],
            "role": "standard-user",
            "resend_emails": True,
        }
        logger.info("Sending ChatGPT Team invite", target_email=email,
                    account=account.get("name"))
        try:
            r = await self.http.post(url, json=payload,
                                     headers=self._headers(creds))
        except httpx.TimeoutException as e:
            raise ExternalTransientError(f"ChatGPT API timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ExternalTransientError(
                f"ChatGPT API unreachable: {e}"
            ) from e

        if r.status_code == 401:
            raise ExternalPermanentError(
                "Token expired or invalid. Please update credentials."
            )
        if r.status_code == 403:
            raise ExternalPermanentError(
                "Access forbidden. Check cookies or account permissions."
            )
        if r.status_code == 429:
            raise ExternalTransientError("Rate limited. Try again later.")
        if r.status_code >= 500:
            raise ExternalTransientError(
                f"ChatGPT API error: {r.status_code}"
            )
        if r.status_code >= 400:
            logger.warning("ChatGPT invite rejected", status=r.status_code,
                           body=r.text[:200])
            raise ExternalPermanentError(
                f"ChatGPT API error: {r.status_code}"
            )

        try:
            data = r.json()
        except ValueError:
            data = {}
        invites = data.get("account_invites") if isinstance(data, dict) \
            else None
        invite_id = invites[0].get("id") if invites else None
        return {
            "type": "CHATGPT_TEAM",
            "target_email": email,
            "status": "INVITED",
            "invite_id": invite_id,
            "message": "Invite sent successfully via ChatGPT API",
            "sent_at": to_iso(now_ts()),
            "raw_response": data,
        }


class SimulatedInviteProvider(InviteProvider):
    """Providers without an integration yet; the grant is recorded as sent."""

    def __init__(self, slug: str, kind: str, label: str):
        self.slug = slug
        self.kind = kind
        self.label = label

    def check_input(self, input_data: dict) -> None:
        target_email(input_data, self.label)

    async def send_invite(self, account: dict, input_data: dict) -> dict:
        email = target_email(input_data, self.label)
        logger.info("Simulated invite", provider=self.slug,
                    target_email=email)
        return {
            "type": self.kind,
            "target_email": email,
            "status": "INVITED",
            "message": "Invite sent successfully",
            "sent_at": to_iso(now_ts()),
        }


class ManualInviteProvider(InviteProvider):
    slug = "manual"

    def __init__(self, name: str = "provider"):
        self.name = name

    async def send_invite(self, account: dict, input_data: dict) -> dict:
        data = input_data or {}
        return {
            "type": "MANUAL",
            "message": f"Invite queued for {self.name}",
            "target_email": data.get("email") or data.get("target_email"),
            "status": "PENDING_MANUAL",
        }


class ProviderRegistry:
    def __init__(self, providers: Optional[Dict[str, InviteProvider]] = None):
        self.providers: Dict[str, InviteProvider] = dict(providers or {})

    def register(self, provider: InviteProvider) -> None:
        self.providers[provider.slug] = provider

    def get(self, slug: Optional[str]) -> InviteProvider:
        provider = self.providers.get(slug or "")
        if provider is None:
            return ManualInviteProvider(slug or "provider")
        return provider


def default_registry(http: httpx.AsyncClient,
                     chatgpt_base_url: str = "https://chatgpt.com"
                     ) -> ProviderRegistry:
    return ProviderRegistry({
        "chatgpt": ChatGPTInviteProvider(http, chatgpt_base_url),
        "canva": SimulatedInviteProvider("canva", "CANVA_TEAM", "Canva"),
        "spotify": SimulatedInviteProvider("spotify", "SPOTIFY_FAMILY",
                                           "Spotify"),
    })
