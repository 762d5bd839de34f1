"""Click capture and storefront attribution parameter families."""
from .click_capture import (
    BOT_CLICK_ID_PREFIX,
    CaptureOutcome,
    CaptureResult,
    ClickCaptureService,
    build_destination_url,
    is_bot_user_agent,
    is_synthetic_click_id,
    mint_bot_click_id,
    mint_click_id,
)
from .families import (
    STOREFRONT_FAMILIES,
    decode_campaign,
    encode_attribution_params,
    family_for_url,
)

__all__ = [
    "BOT_CLICK_ID_PREFIX",
    "CaptureOutcome",
    "CaptureResult",
    "ClickCaptureService",
    "STOREFRONT_FAMILIES",
    "build_destination_url",
    "decode_campaign",
    "encode_attribution_params",
    "family_for_url",
    "is_bot_user_agent",
    "is_synthetic_click_id",
    "mint_bot_click_id",
    "mint_click_id",
]
