"""
Parsers from raw response protos to validated models.

The offsets below are the wire format. They are fixed by the remote service
and must only change when the service's responses change.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from stadia_spider import models
from stadia_spider.proto import at


class UnexpectedResponseError(ValueError):
    """A response is not shaped the way its parser requires."""


class UnknownSkuTypeError(LookupError):
    """A sku type id is not one we know; the wire format has drifted."""

    def __init__(self, type_id: Any):
        super().__init__(f"unexpected sku type id {type_id!r}")
        self.type_id = type_id


class SkuOffsets:
    SKU_ID = 0
    NAME = 1
    IMAGES = 2  # [?, [[[?, url]]]]
    GAME_ID = 4
    INTERNAL_NAME = 5
    TYPE_ID = 6
    DESCRIPTION = 9
    TIMESTAMP_A = 10  # [seconds] or []
    CHILD_SKUS = 14  # [[[sku_id, ...], ...]]
    PUBLISHER_ORGANIZATION_ID = 15
    DEVELOPER_ORGANIZATION_IDS = 16
    TIMESTAMP_B = 26  # [seconds] or []
    SUBSCRIPTION_ID = 27


class PlayerOffsets:
    NAME_AND_NUMBER = 0  # [name, number]
    AVATAR = 1  # [avatar_id, avatar_url]
    PLAYER_ID = 5


class CaptureOffsets:
    CAPTURE_ID = 1
    GAME = 2  # [game_id]
    GAME_NAME = 3
    TIMESTAMP = 4  # [timestamp]
    IMAGE = 7  # [?, url]
    VIDEO = 8  # [?, url]


SKU_TYPES_BY_ID = {
    1: "Game",
    2: "Addon",
    3: "Bundle",
    4: "ExternalSubscription",
    5: "StadiaSubscription",
    6: "AddonSubscription",
    9: "AddonBundle",
    10: "PreorderBundle",
}

_SUBSCRIPTION_SKU_TYPES = {"StadiaSubscription", "ExternalSubscription"}


def _require_array(proto: Any, what: str) -> list:
    if not isinstance(proto, list):
        raise UnexpectedResponseError(f"expected {what} array, got {proto!r}")
    return proto


def sku_type_from_id(type_id: Any) -> str:
    if isinstance(type_id, bool) or not isinstance(type_id, int):
        raise UnexpectedResponseError(f"sku type id is not an integer: {type_id!r}")
    try:
        return SKU_TYPES_BY_ID[type_id]
    except KeyError:
        raise UnknownSkuTypeError(type_id) from None


def _cover_image_url(proto: list) -> Optional[str]:
    url = at(proto, SkuOffsets.IMAGES, 1, 0, 0, 1)
    if isinstance(url, str):
        # strip the sizing suffix, e.g. "=w1280-h720"
        return url.split("=")[0]
    return None


def sku_from_proto(proto: Any) -> models.Sku:
    proto = _require_array(proto, "sku")
    sku_type = sku_type_from_id(at(proto, SkuOffsets.TYPE_ID))

    children = at(proto, SkuOffsets.CHILD_SKUS, 0)
    data: Dict[str, Any] = {
        "sku_type": sku_type,
        "sku_id": at(proto, SkuOffsets.SKU_ID),
        "game_id": at(proto, SkuOffsets.GAME_ID),
        "name": at(proto, SkuOffsets.NAME),
        "internal_name": at(proto, SkuOffsets.INTERNAL_NAME),
        "description": at(proto, SkuOffsets.DESCRIPTION),
        "cover_image_url": _cover_image_url(proto),
        "timestamp_a": at(proto, SkuOffsets.TIMESTAMP_A, 0),
        "timestamp_b": at(proto, SkuOffsets.TIMESTAMP_B, 0),
        "publisher_organization_id": at(proto, SkuOffsets.PUBLISHER_ORGANIZATION_ID),
        "developer_organization_ids": at(proto, SkuOffsets.DEVELOPER_ORGANIZATION_IDS),
        "child_sku_ids": [at(child, 0) for child in children] if isinstance(children, list) else None,
    }
    if sku_type in _SUBSCRIPTION_SKU_TYPES:
        data["subscription_id"] = at(proto, SkuOffsets.SUBSCRIPTION_ID)

    return models.SKU_MODELS[sku_type].model_validate(data)


def shallow_player_from_proto(proto: Any) -> models.Player:
    """Parse the id/name/number/avatar block shared by profiles, friends and searches."""
    proto = _require_array(proto, "player")
    return models.Player.model_validate({
        "player_id": at(proto, PlayerOffsets.PLAYER_ID),
        "name": at(proto, PlayerOffsets.NAME_AND_NUMBER, 0),
        "number": at(proto, PlayerOffsets.NAME_AND_NUMBER, 1),
        "avatar_image_url": at(proto, PlayerOffsets.AVATAR, 1),
    })


def capture_from_proto(proto: Any) -> models.Capture:
    proto = _require_array(proto, "capture")
    return models.Capture.model_validate({
        "capture_id": at(proto, CaptureOffsets.CAPTURE_ID),
        "game_id": at(proto, CaptureOffsets.GAME, 0),
        "game_name": at(proto, CaptureOffsets.GAME_NAME),
        "timestamp": at(proto, CaptureOffsets.TIMESTAMP, 0),
        "image_url": at(proto, CaptureOffsets.IMAGE, 1),
        "video_url": at(proto, CaptureOffsets.VIDEO, 1),
    })
