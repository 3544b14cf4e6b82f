import base64
import logging
import time
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from outfit_studio import __version__, config
from outfit_studio.accounts import (
    AccountGateway,
    AuthError,
    AuthErrorCode,
    InsufficientCreditsError,
    ProfileStoreError,
    describe_auth_error,
)
from outfit_studio.generator import GenerationError, ImageGenerator, is_key_revocation_error
from outfit_studio.ingestion import ingest_uploads
from outfit_studio.models import (
    AppStatus,
    ConversionOutcome,
    CreditPackage,
    GenerationSettings,
    NormalizedImage,
    OperatingMode,
    UserAccount,
)
from outfit_studio.payments import CREDIT_PACKAGES, PaymentDetails, find_package, purchase_package
from outfit_studio.prompts import MODE_COPY, compose
from outfit_studio.session import HostKeyCapability, ImageCollection, SessionStore, StudioSession

# --- 1. Configuration ---
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# --- 2. Pydantic Models ---
class ModePayload(BaseModel):
    mode: OperatingMode


class RegisterPayload(BaseModel):
    email: str
    password: str
    displayName: str = ""
    username: str = ""


class LoginPayload(BaseModel):
    email: str
    password: str


class FederatedLoginPayload(BaseModel):
    idToken: Optional[str] = Field(None, description="Credential returned by the provider popup.")
    providerId: str = "google.com"
    errorCode: Optional[str] = Field(None, description="Popup failure reported by the browser, e.g. popup-blocked.")
    hostname: Optional[str] = None


class ResetPasswordPayload(BaseModel):
    email: str


class PurchasePayload(BaseModel):
    packageId: str
    payment: PaymentDetails


class ImageView(BaseModel):
    id: str
    mimeType: str
    previewUrl: str
    filename: Optional[str] = None
    converted: bool = False
    passthrough: bool = Field(False, description="AVIF that could not be converted and was kept as-is.")


class SessionView(BaseModel):
    sessionId: str
    mode: OperatingMode
    status: AppStatus
    settings: GenerationSettings
    productImages: List[ImageView]
    modelImages: List[ImageView]
    hasApiKey: bool
    canGenerate: bool
    error: Optional[str] = None
    generatedImage: Optional[str] = None
    account: Optional[UserAccount] = None


class AccountResponse(BaseModel):
    account: Optional[UserAccount] = None
    degraded: bool = False
    failed: bool = False
    reason: Optional[str] = None


class GenerationResponse(BaseModel):
    imageUrl: str = Field(..., description="The generated image as a PNG data URI.")
    aspectRatio: str
    credits: Optional[int] = None


class PurchaseResponse(BaseModel):
    credits: int


def image_view(img: NormalizedImage) -> ImageView:
    return ImageView(
        id=img.id,
        mimeType=img.mime_type,
        previewUrl=img.preview_url,
        filename=img.filename,
        converted=img.conversion == ConversionOutcome.CONVERTED,
        passthrough=img.conversion == ConversionOutcome.PASSTHROUGH,
    )


def session_view(session: StudioSession) -> SessionView:
    return SessionView(
        sessionId=session.id,
        mode=session.mode,
        status=session.status,
        settings=session.settings,
        productImages=[image_view(img) for img in session.product_images],
        modelImages=[image_view(img) for img in session.model_images],
        hasApiKey=session.has_api_key,
        canGenerate=session.can_generate,
        error=session.error,
        generatedImage=session.generated_image,
        account=session.account,
    )


def download_filename() -> str:
    return f"studio-{int(time.time() * 1000)}.png"


# --- 3. Dependencies ---
def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_gateway(request: Request) -> AccountGateway:
    return request.app.state.gateway


def get_generator(request: Request) -> ImageGenerator:
    return request.app.state.generator


def get_session(session_id: str, sessions: SessionStore = Depends(get_sessions)) -> StudioSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def require_account(session: StudioSession = Depends(get_session)) -> UserAccount:
    if session.account is None:
        raise HTTPException(status_code=401, detail="Please sign in first.")
    return session.account


router = APIRouter()


# --- 4. API Endpoints ---
@router.get("/")
async def root():
    return {"message": "Outfit Studio API is running"}


@router.get("/modes")
async def get_modes():
    return {mode.value: copy for mode, copy in MODE_COPY.items()}


@router.get("/packages", response_model=List[CreditPackage])
async def get_packages():
    return CREDIT_PACKAGES


@router.post("/sessions", response_model=SessionView, status_code=201)
async def create_session(sessions: SessionStore = Depends(get_sessions)):
    session = await sessions.create()
    logger.info(f"Created studio session {session.id}")
    return session_view(session)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session_state(session: StudioSession = Depends(get_session)):
    return session_view(session)


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, sessions: SessionStore = Depends(get_sessions)):
    if not sessions.drop(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@router.put("/sessions/{session_id}/mode", response_model=SessionView)
async def switch_mode(payload: ModePayload, session: StudioSession = Depends(get_session)):
    if session.is_generating:
        raise HTTPException(status_code=409, detail="Wait for the current generation to finish before switching modes.")
    session.switch_mode(payload.mode)
    return session_view(session)


@router.put("/sessions/{session_id}/settings", response_model=SessionView)
async def update_settings(settings: GenerationSettings, session: StudioSession = Depends(get_session)):
    session.update_settings(settings)
    return session_view(session)


@router.post("/sessions/{session_id}/images/{collection}", response_model=SessionView)
async def upload_images(
    collection: ImageCollection,
    files: List[UploadFile] = File(...),
    session: StudioSession = Depends(get_session),
):
    if collection == ImageCollection.MODEL and session.mode != OperatingMode.OWN_MODEL:
        raise HTTPException(status_code=400, detail="A model photo is only used in Virtual Try-On mode.")

    images = await ingest_uploads(session.images(collection), files, session.max_files(collection))
    session.replace_images(collection, images)
    return session_view(session)


@router.delete("/sessions/{session_id}/images/{collection}/{image_id}", response_model=SessionView)
async def remove_image(collection: ImageCollection, image_id: str, session: StudioSession = Depends(get_session)):
    if not session.remove_image(collection, image_id):
        raise HTTPException(status_code=404, detail="Image not found")
    return session_view(session)


@router.post("/sessions/{session_id}/api-key", response_model=SessionView)
async def select_api_key(session: StudioSession = Depends(get_session)):
    try:
        await session.select_api_key()
    except Exception as e:
        logger.error(f"Error selecting key: {e}")
        session.error = "Failed to select API key. Please try again."
        raise HTTPException(status_code=502, detail=session.error)
    return session_view(session)


@router.post("/sessions/{session_id}/generate", response_model=GenerationResponse)
async def generate(
    session: StudioSession = Depends(get_session),
    generator: ImageGenerator = Depends(get_generator),
    gateway: AccountGateway = Depends(get_gateway),
):
    if session.is_generating:
        raise HTTPException(status_code=409, detail="A generation is already in progress.")
    if not session.has_api_key:
        raise HTTPException(status_code=403, detail="Please select a billing-enabled API key first.")
    if not session.can_generate:
        raise HTTPException(status_code=400, detail="Add product images and describe the subject or action first.")

    account = session.account
    charge_credit = config.DEDUCT_CREDIT_ON_GENERATE and account is not None
    if charge_credit and account.credits <= 0:
        session.error = "Insufficient credits. Please purchase more to continue."
        raise HTTPException(status_code=402, detail=session.error)

    session.status = AppStatus.GENERATING
    session.error = None
    session.generated_image = None

    request = compose(session.mode, session.product_images, session.reference_image, session.settings)
    try:
        image_url = await generator.generate(request)
    except GenerationError as e:
        message = str(e) or "Failed to generate image."
        session.error = message
        session.status = AppStatus.ERROR
        if is_key_revocation_error(message):
            session.revoke_api_key()
        raise HTTPException(status_code=e.status_code, detail=message)
    except Exception as e:
        logger.exception("Unexpected generation failure")
        session.error = "Failed to generate image."
        session.status = AppStatus.ERROR
        if is_key_revocation_error(str(e)):
            session.revoke_api_key()
        raise HTTPException(status_code=500, detail=f"An internal server error occurred: {str(e)}")

    session.generated_image = image_url
    session.status = AppStatus.SUCCESS

    credits = account.credits if account is not None else None
    if charge_credit:
        try:
            outcome = await gateway.deduct_credit(account.uid, token=account.id_token)
            credits = outcome.value
            account.credits = credits
        except (InsufficientCreditsError, ProfileStoreError) as e:
            logger.error(f"Failed to deduct credit but generation worked: {e}")

    return GenerationResponse(imageUrl=image_url, aspectRatio=request.aspect_ratio, credits=credits)


@router.get(
    "/sessions/{session_id}/result",
    response_class=Response,
    responses={
        200: {
            "content": {"image/png": {}},
            "description": "The last generated image in PNG format."
        }
    }
)
async def download_result(session: StudioSession = Depends(get_session)):
    if not session.generated_image:
        raise HTTPException(status_code=404, detail="Nothing has been generated yet.")
    encoded = session.generated_image.split(",", 1)[1]
    return Response(
        content=base64.b64decode(encoded),
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{download_filename()}"'},
    )


# --- 5. Account Endpoints ---
def account_response(session: StudioSession, outcome) -> AccountResponse:
    session.account = outcome.value
    if outcome.is_degraded:
        logger.warning(f"Signed in with degraded profile for session {session.id}: {outcome.reason}")
    return AccountResponse(account=outcome.value, degraded=outcome.is_degraded, reason=outcome.reason)


@router.post("/sessions/{session_id}/register", response_model=AccountResponse)
async def register(payload: RegisterPayload, session: StudioSession = Depends(get_session),
                   gateway: AccountGateway = Depends(get_gateway)):
    try:
        outcome = await gateway.register(payload.email, payload.password, payload.displayName, payload.username)
    except AuthError as e:
        logger.error(f"Registration error: {e}")
        raise HTTPException(status_code=400, detail=describe_auth_error(e, login=False))
    return account_response(session, outcome)


@router.post("/sessions/{session_id}/login", response_model=AccountResponse)
async def login(payload: LoginPayload, session: StudioSession = Depends(get_session),
                gateway: AccountGateway = Depends(get_gateway)):
    try:
        outcome = await gateway.login(payload.email, payload.password)
    except AuthError as e:
        logger.error(f"Login error: {e}")
        raise HTTPException(status_code=401, detail=describe_auth_error(e))
    return account_response(session, outcome)


@router.post("/sessions/{session_id}/federated-login", response_model=AccountResponse)
async def federated_login(payload: FederatedLoginPayload, session: StudioSession = Depends(get_session),
                          gateway: AccountGateway = Depends(get_gateway)):
    hostname = payload.hostname or "this site"
    if payload.errorCode:
        try:
            code = AuthErrorCode(payload.errorCode.replace("auth/", ""))
        except ValueError:
            code = AuthErrorCode.UNKNOWN
        raise HTTPException(status_code=400,
                            detail=describe_auth_error(AuthError(code), federated=True, hostname=hostname))
    if not payload.idToken:
        raise HTTPException(status_code=400, detail="Missing provider credential.")

    try:
        outcome = await gateway.login_with_federated_provider(payload.idToken, payload.providerId)
    except AuthError as e:
        logger.error(f"Google Login Error: {e}")
        raise HTTPException(status_code=401, detail=describe_auth_error(e, federated=True, hostname=hostname))
    return account_response(session, outcome)


@router.post("/sessions/{session_id}/logout", response_model=SessionView)
async def logout(session: StudioSession = Depends(get_session)):
    session.account = None
    return session_view(session)


@router.get("/sessions/{session_id}/account", response_model=AccountResponse)
async def refresh_account(account: UserAccount = Depends(require_account),
                          session: StudioSession = Depends(get_session),
                          gateway: AccountGateway = Depends(get_gateway)):
    outcome = await gateway.fetch_profile(account.uid, token=account.id_token)
    if outcome.value is not None:
        session.account = outcome.value.model_copy(update={"id_token": account.id_token})
    return AccountResponse(account=session.account, degraded=outcome.is_degraded,
                           failed=outcome.is_failed, reason=outcome.reason)


@router.post("/sessions/{session_id}/purchase", response_model=PurchaseResponse)
async def purchase(payload: PurchasePayload, account: UserAccount = Depends(require_account),
                   gateway: AccountGateway = Depends(get_gateway)):
    package = find_package(payload.packageId)
    if package is None:
        raise HTTPException(status_code=404, detail=f"Unknown credit package: {payload.packageId}")
    try:
        credits = await purchase_package(gateway, account, package, payload.payment,
                                         processing_delay=config.PAYMENT_PROCESSING_DELAY_SECONDS)
    except ProfileStoreError as e:
        logger.error(f"Purchase failed: {e}")
        raise HTTPException(status_code=502, detail="Purchase failed. Please try again.")
    account.credits = credits
    return PurchaseResponse(credits=credits)


@router.post("/auth/reset-password")
async def reset_password(payload: ResetPasswordPayload, gateway: AccountGateway = Depends(get_gateway)):
    try:
        await gateway.reset_credential(payload.email)
    except AuthError as e:
        logger.error(f"Reset password error: {e}")
        raise HTTPException(status_code=400, detail=describe_auth_error(e, login=False))
    return {"message": "Password reset email sent! Check your inbox."}


# --- 6. FastAPI Application Setup ---
def create_app(
    gateway: Optional[AccountGateway] = None,
    generator: Optional[ImageGenerator] = None,
    host: Optional[HostKeyCapability] = None,
) -> FastAPI:
    app = FastAPI(
        title="Outfit Studio API",
        description="AI product photography: model shots, virtual try-on and flat lays from your product images.",
        version=__version__,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.sessions = SessionStore(host=host)
    app.state.gateway = gateway or AccountGateway()
    app.state.generator = generator or ImageGenerator()
    app.include_router(router)
    return app


app = create_app()


def main():
    uvicorn.run("outfit_studio.app:app", host="0.0.0.0", port=8000)


# --- 7. Run the Application ---
if __name__ == "__main__":
    main()
