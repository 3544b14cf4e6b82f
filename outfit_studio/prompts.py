from typing import List, Optional, Sequence, Union

from outfit_studio.models import (
    GenerationRequest,
    GenerationSettings,
    ImagePart,
    ImageRole,
    NormalizedImage,
    OperatingMode,
    TextPart,
)

# Enforce high quality keywords on every template
QUALITY_ENFORCEMENT = (
    "High fidelity, 2K resolution, highly detailed, photorealistic, masterpiece, "
    "professional photography, sharp focus, perfect lighting."
)

PORTRAIT = "3:4"    # Fashion standard
LANDSCAPE = "4:3"   # Tabletop standard


# --- Copy shown next to the form for each mode ---
MODE_COPY = {
    OperatingMode.AI_MODEL: {
        "title": "AI Model Generator",
        "description": "Generate a professional AI model wearing your products.",
        "uploads": "Product Images",
        "labels": {
            "subject": "Model Details",
            "action": "Pose & Expression",
            "surroundings": "Background Setting",
            "style": "Lighting & Mood",
        },
        "placeholders": {
            "subject": "e.g. Young woman, blonde hair, professional look...",
            "action": "e.g. Walking towards camera, confident expression...",
            "surroundings": "e.g. Urban street, blurred city background...",
            "style": "e.g. Golden hour, cinematic lighting, soft focus...",
        },
    },
    OperatingMode.OWN_MODEL: {
        "title": "Virtual Try-On",
        "description": "Upload your own model photo and dress them in your products.",
        "uploads": "Product Images",
        "labels": {
            "subject": "Styling & Fit Instructions",
            "action": "Expression Adjustments",
            "surroundings": "Background Changes (Optional)",
            "style": "Lighting & Color Grading",
        },
        "placeholders": {
            "subject": "e.g. Loose fit shirt, tucked in...",
            "action": "e.g. Keep original expression, look at camera...",
            "surroundings": "e.g. Keep original background, or change to white...",
            "style": "e.g. Natural lighting, match product lighting...",
        },
    },
    OperatingMode.FLAT_LAY: {
        "title": "Flat Lay Studio",
        "description": "Create artistic flat lay compositions of your items.",
        "uploads": "Item Images",
        "labels": {
            "subject": "Arrangement Style",
            "action": "Composition Focus",
            "surroundings": "Surface Material",
            "style": "Props & Lighting",
        },
        "placeholders": {
            "subject": "e.g. Knolling, Organized Grid, Organic Scatter...",
            "action": "e.g. Hero item in center, accessories surrounding...",
            "surroundings": "e.g. White Marble, Wooden Table, Pastel Background...",
            "style": "e.g. Soft Daylight, Hard Shadows, Minimalist Props...",
        },
    },
}


def aspect_ratio_for(mode: OperatingMode) -> str:
    return LANDSCAPE if mode == OperatingMode.FLAT_LAY else PORTRAIT


def settings_block(settings: GenerationSettings) -> str:
    return f"""
      Subject/Model Details: {settings.subject}
      Pose/Action: {settings.action}
      Background/Surroundings: {settings.surroundings}
      Style/Lighting: {settings.style}
    """


def ai_model_prompt(product_count: int, settings: GenerationSettings) -> str:
    return f"""
        Task: High-End Fashion & Product Photography.
        Inputs: The first {product_count} images are the products.
        Instruction: Generate a stunning, photorealistic image of a professional model wearing these products.

        Detailed Configuration:
        {settings_block(settings)}

        Mandates:
        - The model must look absolutely real with natural skin texture and perfect features.
        - The product must be the clear hero of the shot, integrated seamlessly.
        - Use professional studio lighting techniques (Rembrandt, Butterfly, or Softbox).
        - {QUALITY_ENFORCEMENT}
      """


def own_model_prompt(product_count: int, settings: GenerationSettings) -> str:
    return f"""
        Task: Professional Virtual Try-On & Editing.
        Inputs: The first {product_count} images are the products. The LAST image provided is the target person.
        Instruction: Edit the target person's photo to make them wear/use the provided products naturally and realistically.

        Detailed Configuration:
        {settings_block(settings)}

        Mandates:
        - Maintain the person's identity, facial features, and body shape exactly.
        - The clothing fold, drape, and lighting interaction must be physically accurate.
        - {QUALITY_ENFORCEMENT}
      """


def flat_lay_prompt(product_count: int, settings: GenerationSettings) -> str:
    return f"""
        Task: Artistic Flat Lay Composition.
        Inputs: The provided images are items to be arranged.
        Instruction: Create an award-winning flat lay composition.

        Detailed Configuration:
        {settings_block(settings)}

        Mandates:
        - Perfect alignment and spacing (knolling or organic balance).
        - High-end commercial look suitable for a luxury magazine.
        - {QUALITY_ENFORCEMENT}
      """


PROMPT_TEMPLATES = {
    OperatingMode.AI_MODEL: ai_model_prompt,
    OperatingMode.OWN_MODEL: own_model_prompt,
    OperatingMode.FLAT_LAY: flat_lay_prompt,
}


def build_prompt(mode: OperatingMode, product_count: int, settings: GenerationSettings) -> str:
    return PROMPT_TEMPLATES[mode](product_count, settings)


def compose(
    mode: OperatingMode,
    product_images: Sequence[NormalizedImage],
    model_image: Optional[NormalizedImage],
    settings: GenerationSettings,
) -> GenerationRequest:
    """Build the ordered provider request for the current studio state.

    Inputs are not validated here. Products come first in upload order, the
    person image follows them in try-on mode only, and the prompt is always
    the last part.
    """
    parts: List[Union[ImagePart, TextPart]] = [
        ImagePart(mime_type=img.mime_type, data=img.base64, role=ImageRole.PRODUCT)
        for img in product_images
    ]

    if mode == OperatingMode.OWN_MODEL and model_image is not None:
        parts.append(ImagePart(mime_type=model_image.mime_type, data=model_image.base64, role=ImageRole.PERSON))

    parts.append(TextPart(text=build_prompt(mode, len(product_images), settings)))

    return GenerationRequest(parts=parts, aspect_ratio=aspect_ratio_for(mode))
