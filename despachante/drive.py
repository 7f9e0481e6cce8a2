"""
Google Drive uploads over the REST API.

Documents go to one folder per client phone, created under the configured
root folder the first time that phone sends a file. The OAuth token is
kept in a JSON file so it survives restarts; an expired access token is
renewed with the stored refresh token.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlencode

import httpx

from despachante.errors import UpstreamDegraded

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
FILES_URL = "https://www.googleapis.com/drive/v3/files"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
SCOPE = "https://www.googleapis.com/auth/drive.file"
REDIRECT_URI = "http://localhost"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Renew this long before the token actually expires
EXPIRY_MARGIN_SECONDS = 60


def structured_file_name(file_name: str, phone: str, doc_type: str) -> str:
    """<date>_<phone>_<type><ext>, e.g. 2024-05-01_5521999990000_crlv.pdf"""
    suffix = Path(file_name or "").suffix or ".jpg"
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return f"{today}_{phone}_{doc_type}{suffix}"


class DriveUploader:
    """Uploads document bytes to Drive."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        root_folder_id: str,
        token_path: str,
        http: httpx.AsyncClient,
        timeout: float = 30.0,
        clock=time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.root_folder_id = root_folder_id
        self.token_path = Path(token_path)
        self.http = http
        self.timeout = timeout
        self.clock = clock
        self._token: dict = {}
        self._folders: dict[str, str] = {}
        self.load_token()

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def authorized(self) -> bool:
        return bool(self._token.get("access_token") or self._token.get("refresh_token"))

    # -------------------------------------------------------------------------
    # Token handling
    # -------------------------------------------------------------------------

    def load_token(self) -> bool:
        if not self.token_path.exists():
            return False
        try:
            self._token = json.loads(self.token_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read Drive token file {self.token_path}: {e}")
            self._token = {}
            return False
        return True

    def save_token(self, data: dict) -> None:
        token = {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token") or self._token.get("refresh_token"),
            "expiry": self.clock() + float(data.get("expires_in", 3600)),
        }
        self._token = token
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.write_text(json.dumps(token), encoding="utf-8")
        logger.info(f"Drive token saved to {self.token_path}")

    def get_auth_url(self) -> str:
        """Consent URL the operator opens once to authorize uploads."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "scope": SCOPE,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def _request_token(self, form: dict) -> dict:
        try:
            response = await self.http.post(TOKEN_URL, data=form, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamDegraded(f"Drive token request failed: {e}")
        if "access_token" not in data:
            raise UpstreamDegraded("Drive token response has no access_token")
        return data

    async def exchange_code(self, code: str) -> None:
        """Trade an authorization code for tokens and store them."""
        data = await self._request_token({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": REDIRECT_URI,
        })
        self.save_token(data)

    async def ensure_token(self) -> str:
        """
        Return a usable access token, refreshing it when close to expiry.

        Raises:
            UpstreamDegraded: not authorized or refresh failed
        """
        access_token = self._token.get("access_token")
        expiry = float(self._token.get("expiry") or 0)
        if access_token and self.clock() < expiry - EXPIRY_MARGIN_SECONDS:
            return access_token

        refresh_token = self._token.get("refresh_token")
        if not refresh_token:
            raise UpstreamDegraded(f"Drive not authorized, open {self.get_auth_url()}")

        logger.info("Refreshing Drive access token")
        data = await self._request_token({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
        self.save_token(data)
        return self._token["access_token"]

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    async def get_or_create_folder(self, phone: str, access_token: str) -> str:
        """Folder id for a client phone; looked up once, then cached."""
        if phone in self._folders:
            return self._folders[phone]

        headers = {"Authorization": f"Bearer {access_token}"}
        name = f"Cliente {phone}"
        query = f"name='{name}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        if self.root_folder_id:
            query += f" and '{self.root_folder_id}' in parents"

        try:
            response = await self.http.get(
                FILES_URL, params={"q": query, "fields": "files(id,name)"}, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            files = response.json().get("files") or []
            if files:
                folder_id = files[0]["id"]
            else:
                metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE}
                if self.root_folder_id:
                    metadata["parents"] = [self.root_folder_id]
                response = await self.http.post(FILES_URL, json=metadata, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                folder_id = response.json()["id"]
                logger.info(f"Drive folder created for {phone}: {folder_id}")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise UpstreamDegraded(f"Drive folder lookup failed for {phone}: {e}")

        self._folders[phone] = folder_id
        return folder_id

    async def upload(self, content: bytes, file_name: str, phone: str, doc_type: str, mime_type: str) -> str:
        """
        Upload a document into the phone's folder.

        Returns:
            The Drive view URL

        Raises:
            UpstreamDegraded: Drive disabled, not authorized or the upload failed
        """
        if not self.enabled:
            raise UpstreamDegraded("Drive not configured")

        access_token = await self.ensure_token()
        folder_id = await self.get_or_create_folder(phone, access_token)

        metadata = {"name": structured_file_name(file_name, phone, doc_type), "parents": [folder_id]}
        boundary = uuid.uuid4().hex
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            json.dumps(metadata).encode("utf-8"),
            f"\r\n--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n".encode(),
            content,
            f"\r\n--{boundary}--".encode(),
        ])

        try:
            response = await self.http.post(
                UPLOAD_URL,
                params={"uploadType": "multipart"},
                content=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": f"multipart/related; boundary={boundary}",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            file_id = response.json()["id"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise UpstreamDegraded(f"Drive upload failed: {e}")

        url = f"https://drive.google.com/file/d/{file_id}/view"
        logger.info(f"Uploaded {metadata['name']} to Drive: {url}")
        return url


def build_drive_uploader(settings, http: httpx.AsyncClient) -> DriveUploader:
    uploader = DriveUploader(
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        root_folder_id=settings.GOOGLE_DRIVE_FOLDER_ID,
        token_path=settings.DRIVE_TOKEN_PATH,
        http=http,
        timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
    )
    logger.info(f"Google Drive uploads {'enabled' if uploader.enabled else 'disabled'}")
    return uploader
