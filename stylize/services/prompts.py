"""
Prompt Construction
Turns a job's style settings into the text sent to the image model.
"""

from typing import Optional

from stylize.core.config import settings


SYSTEM_INSTRUCTION = """You are an AI that generates high-quality portrait images with the following requirements:

IDENTITY PRESERVATION:
- Preserve the user's face identity and features; they must be clearly recognizable
- Maintain accurate skin tone, facial structure, and distinctive features
- Keep realistic human proportions

CULTURAL RESPECT:
- Create respectful and authentic cultural representations
- Avoid stereotypes, caricatures, or exaggerated features

SAFETY:
- No nudity or sexually explicit content
- No hate speech, violence, or harmful content
- No content involving minors in inappropriate contexts

OUTPUT QUALITY:
- High-quality portrait with professional lighting
- Centered single subject with clear focus
- Sharp details and good composition

The image should be suitable for use as a profile picture or social media avatar."""


PRESET_DESCRIPTIONS = {
    "afrofuturism": (
        "Afrofuturist aesthetic with vibrant colors, geometric patterns, and futuristic elements. "
        "Blend of African cultural motifs with sci-fi technology."
    ),
    "royal": (
        "Royal African aesthetic with traditional royal attire, crowns, jewelry, and regal posture. "
        "Rich fabrics like kente or mudcloth."
    ),
    "street": "Contemporary street style with modern urban fashion, bold colors, and confident attitude.",
    "vintage": "Vintage portrait style with classic photography aesthetics, warm tones, and timeless elegance.",
    "warrior": "Warrior aesthetic with traditional warrior attire, accessories, and powerful stance.",
}


def model_for_quality(quality: str) -> str:
    if quality == "high":
        return settings.GEMINI_MODEL_HIGH
    return settings.GEMINI_MODEL_STANDARD


def estimate_ms(quality: str) -> int:
    if quality == "high":
        return settings.ESTIMATE_HIGH_MS
    return settings.ESTIMATE_STANDARD_MS


def build_user_prompt(
    aspect_ratio: str,
    preset_id: Optional[str] = None,
    prompt: Optional[str] = None,
    negative_prompt: Optional[str] = None,
) -> str:
    """Preset description + free prompt + technical requirements."""
    parts = []
    if preset_id and preset_id in PRESET_DESCRIPTIONS:
        parts.append(PRESET_DESCRIPTIONS[preset_id])
    if prompt:
        parts.append(prompt.strip())

    text = " ".join(parts)
    text += (
        "\n\nTechnical requirements:\n"
        f"- Aspect ratio: {aspect_ratio}\n"
        "- Single centered subject\n"
        "- Professional portrait composition\n"
        "- High quality and sharp details"
    )
    if negative_prompt:
        text += f"\n\nAvoid: {negative_prompt.strip()}"
    return text.strip()[: settings.MAX_PROMPT_LENGTH + 500]


def build_refine_prompt(instruction: str) -> str:
    return (
        "Based on the provided image, apply the following change while keeping "
        "the same person, style, and composition:\n\n"
        f"{instruction.strip()}\n\n"
        "Important: Only apply the requested change. Keep everything else exactly the same."
    )
