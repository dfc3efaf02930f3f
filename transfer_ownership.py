import argparse
import json
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.exceptions import TransportError as AuthTransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

SCOPES = ["https://www.googleapis.com/auth/drive"]
CREDENTIALS_PATH = "credentials.json"
TOKEN_PATH = "token.json"
PERMISSION_FIELDS = "id,emailAddress,role,type"

# 403 reasons Drive returns when it refuses the role change itself.
OWNERSHIP_CONFLICT_REASONS = {
    "cannotModifyInheritedPermission",
    "consentRequiredForOwnershipTransfer",
    "invalidOwnershipTransfer",
    "ownershipChangeAcrossDomainNotPermitted",
    "ownerOnTeamDriveItemNotSupported",
    "pendingOwnerWriterRequired",
}

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Base error for a failed transfer. Carries the HTTP status and body when known."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self):
        message = super().__str__()
        if self.status is not None:
            return f"{message} (status {self.status})"
        return message


class AuthError(TransferError):
    pass


class NotFoundError(TransferError):
    pass


class PermissionConflictError(TransferError):
    pass


class ValidationError(TransferError):
    pass


class TransportError(TransferError):
    pass


def _error_reason(content: bytes) -> Tuple[Optional[str], Optional[str]]:
    try:
        payload = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None, None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None, None
    errors = error.get("errors") or [{}]
    first = errors[0] if isinstance(errors, list) and isinstance(errors[0], dict) else {}
    return first.get("reason"), error.get("message")


def classify_http_error(err: HttpError) -> TransferError:
    """
    Map a Drive API HttpError onto the transfer error taxonomy.
    """
    status = err.resp.status
    content = err.content or b""
    body = content.decode("utf-8", errors="replace")
    reason, message = _error_reason(content)
    message = message or str(err)

    if status == 401:
        return AuthError(message, status, body)
    if status == 404:
        return NotFoundError(message, status, body)
    if status == 400:
        return ValidationError(message, status, body)
    if status == 409 or (status == 403 and reason in OWNERSHIP_CONFLICT_REASONS):
        return PermissionConflictError(message, status, body)
    return TransportError(message, status, body)


@dataclass
class PermissionRecord:
    id: str
    email_address: Optional[str]
    role: str
    type: Optional[str] = None

    @classmethod
    def from_resource(cls, resource: Dict) -> "PermissionRecord":
        return cls(
            id=resource["id"],
            email_address=resource.get("emailAddress"),
            role=resource.get("role", ""),
            type=resource.get("type"),
        )

    def matches(self, email: str) -> bool:
        return bool(self.email_address) and self.email_address.lower() == email.lower()


@dataclass
class TransferRequest:
    file_id: str
    target_email: str
    target_permission_id: Optional[str] = None


@dataclass
class TransferOutcome:
    permission: Optional[PermissionRecord] = None
    error: Optional[TransferError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PermissionStore:
    """
    Permission endpoints of a Drive v3 service. Each call is one request
    (list may page); failures come back as TransferError subclasses.
    """

    def __init__(self, service):
        self.service = service

    def _execute(self, request) -> Dict:
        try:
            return request.execute()
        except HttpError as err:
            raise classify_http_error(err) from err
        except RefreshError as err:
            raise AuthError(f"Credential refresh failed: {err}") from err
        except AuthTransportError as err:
            raise TransportError(f"Network error during credential refresh: {err}") from err
        except (httplib2.HttpLib2Error, OSError) as err:
            raise TransportError(f"Network error: {err}") from err

    def list(self, file_id: str) -> List[PermissionRecord]:
        records: List[PermissionRecord] = []
        page_token = None
        while True:
            resp = self._execute(
                self.service.permissions().list(
                    fileId=file_id,
                    fields=f"nextPageToken, permissions({PERMISSION_FIELDS})",
                    pageToken=page_token,
                    supportsAllDrives=False,
                )
            )
            records.extend(PermissionRecord.from_resource(p) for p in resp.get("permissions", []))
            page_token = resp.get("nextPageToken")
            if not page_token:
                return records

    def create(self, file_id: str, role: str, email_address: str, notify: bool = True) -> PermissionRecord:
        resp = self._execute(
            self.service.permissions().create(
                fileId=file_id,
                body={"type": "user", "role": role, "emailAddress": email_address},
                sendNotificationEmail=notify,
                fields=PERMISSION_FIELDS,
                supportsAllDrives=False,
            )
        )
        return PermissionRecord.from_resource(resp)

    def update(
        self, file_id: str, permission_id: str, role: str, transfer_ownership: bool = False
    ) -> PermissionRecord:
        resp = self._execute(
            self.service.permissions().update(
                fileId=file_id,
                permissionId=permission_id,
                body={"role": role},
                transferOwnership=transfer_ownership,
                fields=PERMISSION_FIELDS,
                supportsAllDrives=False,
            )
        )
        return PermissionRecord.from_resource(resp)


def find_permission(permissions: Iterable[PermissionRecord], email: str) -> Optional[PermissionRecord]:
    # First match wins if Drive ever returns duplicates for one principal.
    return next((p for p in permissions if p.matches(email)), None)


class OwnershipTransferResolver:
    """
    Makes target_email the owner of file_id.

    Drive only transfers ownership to a principal that already holds a
    permission on the file, so an existing grant is reused and otherwise a
    writer grant is created first, then promoted with transferOwnership.
    """

    def __init__(self, store: PermissionStore):
        self.store = store

    def plan(self, file_id: str, target_email: str) -> Tuple[TransferRequest, Optional[PermissionRecord]]:
        request = TransferRequest(file_id=file_id, target_email=target_email)
        existing = self._resolve_existing(request)
        return request, existing

    def transfer(self, file_id: str, target_email: str) -> TransferOutcome:
        logger.info(f"Starting ownership transfer of {file_id} to {target_email}")
        request = TransferRequest(file_id=file_id, target_email=target_email)
        stages: List[Callable[[TransferRequest], Optional[PermissionRecord]]] = [
            self._resolve_existing,
            self._ensure_permission,
            self._promote_to_owner,
        ]
        result = None
        for stage in stages:
            try:
                result = stage(request)
            except TransferError as err:
                logger.error(f"Ownership transfer of {file_id} failed: {err}")
                return TransferOutcome(error=err)
        logger.info("Ownership transfer successful")
        return TransferOutcome(permission=result)

    def _resolve_existing(self, request: TransferRequest) -> Optional[PermissionRecord]:
        logger.info("Checking existing permissions...")
        permissions = self.store.list(request.file_id)
        logger.debug(f"Current permissions: {json.dumps([p.__dict__ for p in permissions], indent=2)}")
        existing = find_permission(permissions, request.target_email)
        if existing is None:
            return None
        logger.info(f"{request.target_email} already has access with role: {existing.role}")
        if existing.role == "owner":
            raise PermissionConflictError(f"{request.target_email} already owns {request.file_id}")
        request.target_permission_id = existing.id
        return existing

    def _ensure_permission(self, request: TransferRequest) -> Optional[PermissionRecord]:
        if request.target_permission_id:
            return None
        logger.info(f"Adding {request.target_email} as writer first...")
        created = self.store.create(request.file_id, "writer", request.target_email, notify=True)
        request.target_permission_id = created.id
        logger.info(f"Created new permission with ID: {created.id}")
        return created

    def _promote_to_owner(self, request: TransferRequest) -> PermissionRecord:
        logger.info(f"Transferring ownership using permission ID: {request.target_permission_id}")
        return self.store.update(
            request.file_id, request.target_permission_id, "owner", transfer_ownership=True
        )


def get_drive_service(credentials_path: str, token_path: str):
    """
    Build an authenticated Drive API client, running the installed-app consent
    flow when no usable token is stored.
    """
    creds = None
    if os.path.exists(token_path):
        try:
            creds = Credentials.from_authorized_user_file(token_path, SCOPES)
        except (ValueError, KeyError) as err:
            logger.warning(f"Ignoring unreadable token file at {token_path}: {err}")
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            logger.info("Refreshing expired access token...")
            try:
                creds.refresh(Request())
            except RefreshError as err:
                raise AuthError(f"Could not refresh token at {token_path}: {err}") from err
            except AuthTransportError as err:
                raise TransportError(f"Network error while refreshing token: {err}") from err
        else:
            if not os.path.exists(credentials_path):
                raise AuthError(f"Client secrets file not found at {credentials_path}")
            logger.info("No valid token found, starting OAuth flow...")
            flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
            creds = flow.run_local_server(port=0)
        token_dir = os.path.dirname(token_path)
        if token_dir:
            os.makedirs(token_dir, exist_ok=True)
        with open(token_path, "w", encoding="utf-8") as token_file:
            token_file.write(creds.to_json())
        logger.info(f"Token saved to {token_path}")
    return build("drive", "v3", credentials=creds, cache_discovery=False)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transfer ownership of one Drive file to another account.")
    parser.add_argument(
        "--file-id",
        default=os.environ.get("DRIVE_FILE_ID"),
        help="Id of the file to transfer (env: DRIVE_FILE_ID).",
    )
    parser.add_argument(
        "--target-email",
        default=os.environ.get("DRIVE_TARGET_EMAIL"),
        help="Account that should become the owner (env: DRIVE_TARGET_EMAIL).",
    )
    parser.add_argument(
        "--credentials",
        default=os.environ.get("DRIVE_CREDENTIALS", CREDENTIALS_PATH),
        help="Path to the OAuth client credentials file.",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("DRIVE_TOKEN", TOKEN_PATH),
        help="Path to store the OAuth access/refresh token.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report the planned calls without changing anything.")
    parser.add_argument("--verbose", action="store_true", help="Log current permissions and API details.")
    args = parser.parse_args(argv)

    if not args.file_id:
        parser.error("--file-id (or DRIVE_FILE_ID) is required")
    if not args.target_email:
        parser.error("--target-email (or DRIVE_TARGET_EMAIL) is required")
    return args


def main(argv: Optional[List[str]] = None, service=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        if service is None:
            service = get_drive_service(args.credentials, args.token)
        resolver = OwnershipTransferResolver(PermissionStore(service))

        if args.dry_run:
            _, existing = resolver.plan(args.file_id, args.target_email)
            if existing:
                print(f"[DRY RUN] Would promote permission {existing.id} ({existing.role}) to owner")
            else:
                print(f"[DRY RUN] Would add {args.target_email} as writer, then promote to owner")
            return 0

        outcome = resolver.transfer(args.file_id, args.target_email)
    except TransferError as err:
        outcome = TransferOutcome(error=err)

    if not outcome.succeeded:
        err = outcome.error
        print(f"error          {type(err).__name__}: {err}")
        if err.body:
            print(err.body)
        return 1

    permission = outcome.permission
    owner = permission.email_address or args.target_email
    print(f"transferred    {args.file_id} -> {owner} (permission {permission.id}, role {permission.role})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
