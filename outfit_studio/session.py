import logging
import uuid
from enum import Enum
from typing import Dict, List, Optional, Protocol

from outfit_studio import config
from outfit_studio.models import (
    AppStatus,
    GenerationSettings,
    NormalizedImage,
    OperatingMode,
    UserAccount,
)

logger = logging.getLogger(__name__)


class ImageCollection(str, Enum):
    PRODUCT = "product"
    MODEL = "model"


class HostKeyCapability(Protocol):
    """Optional host hook for choosing a billing-enabled API key."""

    async def has_selected_api_key(self) -> bool: ...

    async def open_select_key(self) -> None: ...


class StudioSession:
    """Everything one browser client is working on."""

    def __init__(self, session_id: str, host: Optional[HostKeyCapability] = None):
        self.id = session_id
        self.host = host
        self.mode = OperatingMode.AI_MODEL
        self.settings = GenerationSettings()
        self.product_images: List[NormalizedImage] = []
        self.model_images: List[NormalizedImage] = []
        self.status = AppStatus.IDLE
        self.error: Optional[str] = None
        self.generated_image: Optional[str] = None
        # Without a host capability the key is assumed usable
        self.has_api_key = host is None
        self.account: Optional[UserAccount] = None

    # --- API key ---

    async def refresh_api_key_status(self) -> bool:
        if self.host is None:
            self.has_api_key = True
            return True
        try:
            self.has_api_key = await self.host.has_selected_api_key()
        except Exception as e:
            logger.error(f"Failed to check API key: {e}")
            self.has_api_key = False
        return self.has_api_key

    async def select_api_key(self) -> None:
        if self.host is None:
            return
        await self.host.open_select_key()
        self.has_api_key = True

    def revoke_api_key(self) -> None:
        self.has_api_key = False

    # --- Images ---

    def images(self, collection: ImageCollection) -> List[NormalizedImage]:
        if collection == ImageCollection.MODEL:
            return self.model_images
        return self.product_images

    def max_files(self, collection: ImageCollection) -> int:
        if collection == ImageCollection.MODEL:
            return config.MAX_MODEL_IMAGES
        return config.MAX_PRODUCT_IMAGES

    def replace_images(self, collection: ImageCollection, images: List[NormalizedImage]) -> None:
        if collection == ImageCollection.MODEL:
            self.model_images = list(images)
        else:
            self.product_images = list(images)

    def remove_image(self, collection: ImageCollection, image_id: str) -> bool:
        current = self.images(collection)
        remaining = [img for img in current if img.id != image_id]
        self.replace_images(collection, remaining)
        return len(remaining) != len(current)

    @property
    def reference_image(self) -> Optional[NormalizedImage]:
        if self.mode == OperatingMode.OWN_MODEL and self.model_images:
            return self.model_images[0]
        return None

    # --- Mode & settings ---

    def switch_mode(self, new_mode: OperatingMode) -> None:
        self.mode = new_mode
        self.status = AppStatus.IDLE
        self.generated_image = None
        self.error = None
        # Reset inputs on mode switch
        self.settings = GenerationSettings()
        if new_mode != OperatingMode.OWN_MODEL:
            self.model_images = []

    def update_settings(self, settings: GenerationSettings) -> None:
        self.settings = settings

    @property
    def can_generate(self) -> bool:
        has_text_params = bool(self.settings.subject) or bool(self.settings.action)
        return bool(
            self.product_images
            and (self.mode != OperatingMode.OWN_MODEL or self.model_images)
            and has_text_params
        )

    @property
    def is_generating(self) -> bool:
        return self.status == AppStatus.GENERATING


class SessionStore:
    def __init__(self, host: Optional[HostKeyCapability] = None):
        self.host = host
        self._sessions: Dict[str, StudioSession] = {}

    async def create(self) -> StudioSession:
        session = StudioSession(uuid.uuid4().hex, host=self.host)
        await session.refresh_api_key_status()
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[StudioSession]:
        return self._sessions.get(session_id)

    def drop(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None
