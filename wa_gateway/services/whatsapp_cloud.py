import httpx
import structlog
from wa_gateway.core.config import settings
from wa_gateway.core.errors import ProviderError

log = structlog.get_logger(__name__)


def _error_body(r: httpx.Response):
    try:
        return r.json()
    except ValueError:
        return r.text


class WhatsAppCloudClient:
    """Thin async wrapper around the WhatsApp Cloud (Graph) API.

    Every call takes the tenant's access token; the client itself only holds
    the shared connection pool.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str = settings.GRAPH_API_BASE,
        api_version: str = settings.GRAPH_API_VERSION,
        upload_timeout: float = settings.MEDIA_UPLOAD_TIMEOUT_SECONDS,
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.upload_timeout = upload_timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path}"

    @staticmethod
    def _headers(access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderError(f"WhatsApp API unreachable: {exc.__class__.__name__}") from exc

    async def send_message(self, phone_number_id: str, access_token: str, payload: dict) -> dict:
        r = await self._request(
            "POST",
            self._url(f"{phone_number_id}/messages"),
            headers=self._headers(access_token),
            json=payload,
        )
        if r.is_error:
            body = _error_body(r)
            log.error("whatsapp_send_failed", status=r.status_code, body=body)
            raise ProviderError(f"Failed to send message: HTTP {r.status_code}", status=r.status_code, body=body)
        return r.json()

    async def get_media_metadata(self, media_id: str, access_token: str) -> dict:
        """GET /{version}/{media_id} -> {"url", "mime_type", ...}; the url is short-lived."""
        r = await self._request("GET", self._url(media_id), headers=self._headers(access_token))
        if r.is_error:
            raise ProviderError(
                f"Cannot fetch media details for {media_id}: HTTP {r.status_code}",
                status=r.status_code,
                body=_error_body(r),
            )
        data = r.json()
        if not data.get("url"):
            raise ProviderError(f"No download URL for media {media_id}", body=data)
        return data

    async def download(self, url: str, access_token: str) -> tuple[bytes, str | None]:
        r = await self._request("GET", url, headers=self._headers(access_token))
        if r.is_error:
            raise ProviderError(
                f"Failed to download media: HTTP {r.status_code}",
                status=r.status_code,
                body=_error_body(r),
            )
        return r.content, r.headers.get("content-type")

    async def upload_media(
        self,
        phone_number_id: str,
        access_token: str,
        data: bytes,
        filename: str,
        content_type: str,
    ) -> str:
        r = await self._request(
            "POST",
            self._url(f"{phone_number_id}/media"),
            headers=self._headers(access_token),
            data={"messaging_product": "whatsapp", "type": content_type},
            files={"file": (filename, data, content_type)},
            timeout=self.upload_timeout,
        )
        if r.is_error:
            raise ProviderError(
                f"WhatsApp media upload failed: HTTP {r.status_code}",
                status=r.status_code,
                body=_error_body(r),
            )
        return r.json()["id"]
