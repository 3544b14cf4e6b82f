"""Account and credit gateway.

Identities live in Firebase Auth and profiles (including the credit balance)
in a Firestore ``users`` collection, both reached over their REST APIs.
Profile reads and writes are treated as a non-critical cache: outages
degrade to fallback values, reported through ``Outcome`` so callers can tell
a real success from a fallback.
"""
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

import httpx
from pydantic import BaseModel

from outfit_studio import config
from outfit_studio.models import Outcome, UserAccount

logger = logging.getLogger(__name__)

IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"
FIRESTORE_URL = "https://firestore.googleapis.com/v1"
USERS_COLLECTION = "users"

# Balance reported when a deduction could not reach the store
FALLBACK_BALANCE_AFTER_DEDUCTION = config.STARTING_CREDITS - 1


# --- Errors ---

class AuthErrorCode(str, Enum):
    INVALID_CREDENTIAL = "invalid-credential"
    EMAIL_ALREADY_IN_USE = "email-already-in-use"
    WEAK_PASSWORD = "weak-password"
    CONFIGURATION_NOT_FOUND = "configuration-not-found"
    OPERATION_NOT_ALLOWED = "operation-not-allowed"
    UNAUTHORIZED_DOMAIN = "unauthorized-domain"
    POPUP_CLOSED_BY_USER = "popup-closed-by-user"
    POPUP_BLOCKED = "popup-blocked"
    CANCELLED_POPUP_REQUEST = "cancelled-popup-request"
    NETWORK_REQUEST_FAILED = "network-request-failed"
    UNKNOWN = "unknown"


class AuthError(Exception):
    def __init__(self, code: AuthErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code
        self.message = message


class ProfileStoreError(Exception):
    pass


class StoreUnavailableError(ProfileStoreError):
    pass


class InsufficientCreditsError(Exception):
    pass


# Identity Toolkit error messages -> error codes
IDENTITY_ERRORS = {
    "EMAIL_EXISTS": AuthErrorCode.EMAIL_ALREADY_IN_USE,
    "INVALID_LOGIN_CREDENTIALS": AuthErrorCode.INVALID_CREDENTIAL,
    "INVALID_PASSWORD": AuthErrorCode.INVALID_CREDENTIAL,
    "EMAIL_NOT_FOUND": AuthErrorCode.INVALID_CREDENTIAL,
    "INVALID_IDP_RESPONSE": AuthErrorCode.INVALID_CREDENTIAL,
    "WEAK_PASSWORD": AuthErrorCode.WEAK_PASSWORD,
    "OPERATION_NOT_ALLOWED": AuthErrorCode.OPERATION_NOT_ALLOWED,
    "CONFIGURATION_NOT_FOUND": AuthErrorCode.CONFIGURATION_NOT_FOUND,
    "INVALID_CONTINUE_URI": AuthErrorCode.UNAUTHORIZED_DOMAIN,
    "UNAUTHORIZED_DOMAIN": AuthErrorCode.UNAUTHORIZED_DOMAIN,
}


def describe_auth_error(error: AuthError, federated: bool = False, login: bool = True,
                        hostname: str = "this site") -> str:
    """Human readable message for an authentication failure."""
    code = error.code
    if code == AuthErrorCode.INVALID_CREDENTIAL:
        if login and not federated:
            return ("Incorrect email or password. If you haven't registered yet, "
                    "please switch to 'Create Account'.")
        return "Invalid credentials provided."
    if code == AuthErrorCode.EMAIL_ALREADY_IN_USE:
        return "This email is already registered."
    if code == AuthErrorCode.WEAK_PASSWORD:
        return "Password should be at least 6 characters."
    if code == AuthErrorCode.CONFIGURATION_NOT_FOUND:
        return "Auth not configured. Please enable 'Email/Password' in Firebase Console."
    if code == AuthErrorCode.OPERATION_NOT_ALLOWED:
        if federated:
            return "Google Sign-In is not enabled. Go to Firebase Console > Authentication > Sign-in method."
        return "Email/Password sign-in is disabled in Firebase Console."
    if code == AuthErrorCode.UNAUTHORIZED_DOMAIN:
        return (f"Domain not authorized: {hostname}. Add it to Firebase Console > "
                "Authentication > Settings > Authorized domains.")
    if code == AuthErrorCode.POPUP_CLOSED_BY_USER:
        return "Sign-in cancelled."
    if code == AuthErrorCode.POPUP_BLOCKED:
        return "Pop-up blocked. Please allow pop-ups for this site."
    if code == AuthErrorCode.CANCELLED_POPUP_REQUEST:
        return "Only one pop-up can be open at a time."
    if code == AuthErrorCode.NETWORK_REQUEST_FAILED:
        return "Network error. Please check your connection."
    if error.message and error.message != code.value:
        return error.message
    if federated:
        return "Failed to sign in with Google."
    return "Authentication failed. Please try again."


# --- Identity provider ---

class IdentityUser(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    id_token: Optional[str] = None


class FirebaseIdentityClient:
    """Firebase Auth through the Identity Toolkit REST API."""

    def __init__(self, api_key: Optional[str] = config.FIREBASE_API_KEY,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise AuthError(AuthErrorCode.CONFIGURATION_NOT_FOUND, "FIREBASE_API_KEY is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{IDENTITY_URL}/accounts:{method}",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.TransportError as e:
            logger.error(f"Identity request {method} failed: {e}")
            raise AuthError(AuthErrorCode.NETWORK_REQUEST_FAILED, str(e))

        if response.status_code != 200:
            raise self._to_auth_error(response)
        return response.json()

    @staticmethod
    def _to_auth_error(response: httpx.Response) -> AuthError:
        try:
            message = response.json().get("error", {}).get("message", "")
        except ValueError:
            message = response.text
        # Messages look like "WEAK_PASSWORD : Password should be at least 6 characters"
        key = message.split(" ")[0].strip() if message else ""
        code = IDENTITY_ERRORS.get(key, AuthErrorCode.UNKNOWN)
        logger.warning(f"Identity provider rejected request: {message or response.status_code}")
        return AuthError(code, message)

    @staticmethod
    def _to_user(data: Dict[str, Any]) -> IdentityUser:
        return IdentityUser(
            uid=data["localId"],
            email=data.get("email"),
            display_name=data.get("displayName") or None,
            id_token=data.get("idToken"),
        )

    async def sign_up(self, email: str, password: str) -> IdentityUser:
        data = await self._call("signUp", {"email": email, "password": password, "returnSecureToken": True})
        return self._to_user(data)

    async def sign_in_with_password(self, email: str, password: str) -> IdentityUser:
        data = await self._call(
            "signInWithPassword", {"email": email, "password": password, "returnSecureToken": True}
        )
        return self._to_user(data)

    async def update_display_name(self, id_token: str, display_name: str) -> None:
        await self._call("update", {"idToken": id_token, "displayName": display_name, "returnSecureToken": False})

    async def sign_in_with_idp(self, provider_token: str, provider_id: str = "google.com",
                               request_uri: str = "http://localhost") -> IdentityUser:
        data = await self._call("signInWithIdp", {
            "postBody": f"id_token={provider_token}&providerId={provider_id}",
            "requestUri": request_uri,
            "returnSecureToken": True,
            "returnIdpCredential": True,
        })
        return self._to_user(data)

    async def send_password_reset(self, email: str) -> None:
        await self._call("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})


# --- Document store ---

def to_firestore_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")}
    return {"stringValue": str(value)}


def from_firestore_value(value: Dict[str, Any]) -> Any:
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return value["booleanValue"]
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    return None


class FirestoreProfileStore:
    """User profile documents in Firestore through the REST API."""

    def __init__(self, project_id: Optional[str] = config.FIREBASE_PROJECT_ID,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self.project_id = project_id
        self.transport = transport
        self.timeout = timeout

    @property
    def database_path(self) -> str:
        return f"projects/{self.project_id}/databases/(default)/documents"

    def document_name(self, uid: str) -> str:
        return f"{self.database_path}/{USERS_COLLECTION}/{uid}"

    async def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> httpx.Response:
        if not self.project_id:
            raise ProfileStoreError("FIREBASE_PROJECT_ID is not configured")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, f"{FIRESTORE_URL}/{path}", headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"Firestore unreachable: {e}")

        if response.status_code == 503:
            raise StoreUnavailableError("Firestore unavailable (offline)")
        return response

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message", response.text)
            except ValueError:
                message = response.text
            raise ProfileStoreError(f"Firestore error {response.status_code}: {message}")

    async def get(self, uid: str, token: Optional[str] = None) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", self.document_name(uid), token)
        if response.status_code == 404:
            return None
        self._raise_for_error(response)
        fields = response.json().get("fields", {})
        return {name: from_firestore_value(value) for name, value in fields.items()}

    async def create(self, uid: str, data: Dict[str, Any], token: Optional[str] = None, merge: bool = False) -> None:
        params = [("updateMask.fieldPaths", name) for name in data] if merge else None
        response = await self._request(
            "PATCH",
            self.document_name(uid),
            token,
            params=params,
            json={"fields": {name: to_firestore_value(value) for name, value in data.items()}},
        )
        self._raise_for_error(response)

    async def increment(self, uid: str, field: str, amount: int, token: Optional[str] = None) -> None:
        # Relative transform so concurrent balance readers never lose an update
        write = {
            "transform": {
                "document": self.document_name(uid),
                "fieldTransforms": [{"fieldPath": field, "increment": {"integerValue": str(amount)}}],
            },
            "currentDocument": {"exists": True},
        }
        response = await self._request("POST", f"{self.database_path}:commit", token, json={"writes": [write]})
        self._raise_for_error(response)


# --- Gateway ---

def _profile_to_account(uid: str, data: Dict[str, Any]) -> UserAccount:
    credits = data.get("credits")
    return UserAccount(
        uid=uid,
        email=data.get("email"),
        display_name=data.get("displayName"),
        username=data.get("username"),
        credits=credits if credits is not None else 0,
    )


class AccountGateway:
    def __init__(self, identity=None, store=None,
                 starting_credits: int = config.STARTING_CREDITS,
                 profile_timeout: float = config.PROFILE_FETCH_TIMEOUT_SECONDS):
        self.identity = identity or FirebaseIdentityClient()
        self.store = store or FirestoreProfileStore()
        self.starting_credits = starting_credits
        self.profile_timeout = profile_timeout
        self._background: Set[asyncio.Task] = set()

    def _fire_and_forget(self, coro, description: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.warning(f"{description} failed: {finished.exception()}")

        task.add_done_callback(_done)

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def register(self, email: str, password: str, display_name: str, username: str) -> Outcome:
        """Create an identity and a profile with the starting balance."""
        user = await self.identity.sign_up(email, password)
        problems = []

        try:
            await self.identity.update_display_name(user.id_token, display_name)
        except AuthError as e:
            logger.warning(f"Failed to update auth profile name: {e}")
            problems.append("display name not saved")

        account = UserAccount(
            uid=user.uid,
            email=user.email or email,
            display_name=display_name,
            username=username,
            credits=self.starting_credits,
            id_token=user.id_token,
        )

        # Don't fail registration if the store is unreachable
        try:
            await self.store.create(user.uid, {
                "email": account.email,
                "displayName": display_name,
                "username": username,
                "credits": self.starting_credits,
                "createdAt": datetime.now(timezone.utc),
            }, token=user.id_token)
        except ProfileStoreError as e:
            logger.warning(f"Could not create profile, proceeding with auth only: {e}")
            problems.append("profile not persisted")

        if problems:
            return Outcome.degraded(account, "; ".join(problems))
        return Outcome.ok(account)

    async def login(self, email: str, password: str) -> Outcome:
        user = await self.identity.sign_in_with_password(email, password)
        fallback = UserAccount(
            uid=user.uid,
            email=user.email,
            display_name=user.display_name,
            credits=self.starting_credits,
            id_token=user.id_token,
        )

        # If the store is slow, just let the user in
        try:
            profile = await asyncio.wait_for(self.fetch_profile(user.uid, token=user.id_token),
                                             timeout=self.profile_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Profile fetch for {user.uid} timed out, using fallback")
            return Outcome.degraded(fallback, "profile fetch timed out")

        if profile.value is not None:
            return Outcome.ok(profile.value.model_copy(update={"id_token": user.id_token}))
        return Outcome.degraded(fallback, profile.reason or "no stored profile")

    async def login_with_federated_provider(self, provider_token: str, provider_id: str = "google.com") -> Outcome:
        user = await self.identity.sign_in_with_idp(provider_token, provider_id)

        # Look for an existing profile to preserve its balance
        reason = None
        existing_failed = False
        try:
            existing = await asyncio.wait_for(self.fetch_profile(user.uid, token=user.id_token),
                                              timeout=self.profile_timeout)
            if existing.value is not None:
                return Outcome.ok(existing.value.model_copy(update={"id_token": user.id_token}))
            reason = existing.reason
            existing_failed = existing.is_failed
        except asyncio.TimeoutError:
            logger.warning(f"Checking existing profile for {user.uid} timed out")
            reason = "profile lookup timed out"

        account = UserAccount(
            uid=user.uid,
            email=user.email,
            display_name=user.display_name,
            credits=self.starting_credits,
            id_token=user.id_token,
        )
        # A failed read says nothing about whether a profile exists, never overwrite it
        if existing_failed:
            return Outcome.degraded(account, reason)

        self._fire_and_forget(
            self.store.create(user.uid, {
                "email": user.email,
                "displayName": user.display_name,
                "credits": self.starting_credits,
                "createdAt": datetime.now(timezone.utc),
            }, token=user.id_token, merge=True),
            "Background profile create",
        )

        if reason:
            return Outcome.degraded(account, reason)
        return Outcome.ok(account)

    async def reset_credential(self, email: str) -> None:
        await self.identity.send_password_reset(email)

    async def fetch_profile(self, uid: str, token: Optional[str] = None) -> Outcome:
        try:
            data = await self.store.get(uid, token=token)
        except StoreUnavailableError as e:
            logger.warning(f"Profile store offline, using local fallback profile: {e}")
            return Outcome.degraded(None, "profile store unavailable")
        except ProfileStoreError as e:
            logger.error(f"Error fetching user profile: {e}")
            return Outcome.failed(str(e))

        if data is None:
            return Outcome.ok(None)
        return Outcome.ok(_profile_to_account(uid, data))

    async def deduct_credit(self, uid: str, token: Optional[str] = None) -> Outcome:
        """Take one credit. Raises InsufficientCreditsError without touching an empty balance."""
        try:
            current = await self.store.get(uid, token=token)
            if current is not None and (current.get("credits") or 0) <= 0:
                raise InsufficientCreditsError("Insufficient credits")

            await self.store.increment(uid, "credits", -1, token=token)
            updated = await self.store.get(uid, token=token)
        except StoreUnavailableError as e:
            logger.warning(f"Could not deduct credit, store offline: {e}")
            return Outcome.degraded(FALLBACK_BALANCE_AFTER_DEDUCTION, "profile store unavailable")

        return Outcome.ok((updated or {}).get("credits") or 0)

    async def purchase_credits(self, uid: str, amount: int, token: Optional[str] = None) -> int:
        try:
            await self.store.increment(uid, "credits", amount, token=token)
            updated = await self.store.get(uid, token=token)
        except ProfileStoreError as e:
            logger.error(f"Error purchasing credits: {e}")
            raise
        return (updated or {}).get("credits") or 0
