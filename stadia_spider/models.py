"""Scalar id types and validated domain models stored in the cache."""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from typing_extensions import Annotated

GameId = Annotated[str, StringConstraints(pattern=r"^[0-9a-f]+rcp1$")]
SkuId = Annotated[str, StringConstraints(pattern=r"^[0-9a-f]+p?$")]
OrganizationId = Annotated[str, StringConstraints(pattern=r"^[0-9a-f]+pup1$")]
PlayerId = Annotated[str, StringConstraints(min_length=4, pattern=r"^[1-9][0-9]*$")]
PlayerName = Annotated[str, StringConstraints(pattern=r"^[A-Za-z][A-Za-z0-9]{2,14}$")]
PlayerNumber = Annotated[str, StringConstraints(pattern=r"^(0000|[1-9][0-9]{3})$")]
GamertagPrefix = Annotated[
    str,
    StringConstraints(
        min_length=2,
        pattern=r"^[a-z][a-z0-9]{1,15}(#(([1-9][0-9]{0,3})|0{0,4})?)?$",
    ),
]
StoreListId = Annotated[int, Field(strict=True, gt=0)]
SubscriptionId = Annotated[int, Field(strict=True, gt=0)]
CaptureId = Annotated[
    str,
    StringConstraints(
        pattern=r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    ),
]
NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]


class Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# --- Skus ---

class SkuBase(Model):
    sku_type: str
    sku_id: SkuId
    game_id: Optional[GameId] = None
    name: Optional[str] = None
    internal_name: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    timestamp_a: Optional[int] = None
    timestamp_b: Optional[int] = None
    publisher_organization_id: Optional[OrganizationId] = None
    developer_organization_ids: Optional[List[OrganizationId]] = None
    child_sku_ids: Optional[List[SkuId]] = None


class ContentSku(SkuBase):
    name: NonEmptyStr
    internal_name: NonEmptyStr


class GameSku(ContentSku):
    sku_type: Literal["Game"] = "Game"


class AddonSku(ContentSku):
    sku_type: Literal["Addon"] = "Addon"


class BundleSku(ContentSku):
    sku_type: Literal["Bundle"] = "Bundle"


class StadiaSubscriptionSku(ContentSku):
    sku_type: Literal["StadiaSubscription"] = "StadiaSubscription"
    subscription_id: SubscriptionId


class ExternalSubscriptionSku(ContentSku):
    sku_type: Literal["ExternalSubscription"] = "ExternalSubscription"
    subscription_id: SubscriptionId


class AddonSubscriptionSku(ContentSku):
    sku_type: Literal["AddonSubscription"] = "AddonSubscription"


class AddonBundleSku(ContentSku):
    sku_type: Literal["AddonBundle"] = "AddonBundle"


class PreorderBundleSku(ContentSku):
    sku_type: Literal["PreorderBundle"] = "PreorderBundle"


class ContentlessSku(SkuBase):
    """A sku id that no longer resolves to content of its own."""

    game_id: None = None
    name: None = None
    internal_name: None = None
    description: None = None
    cover_image_url: None = None
    timestamp_a: None = None
    timestamp_b: None = None
    publisher_organization_id: None = None
    developer_organization_ids: None = None
    child_sku_ids: None = None


class AliasSku(ContentlessSku):
    sku_type: Literal["Alias"] = "Alias"
    target_sku_id: SkuId


class DeletedSku(ContentlessSku):
    sku_type: Literal["Deleted"] = "Deleted"


Sku = Annotated[
    Union[
        GameSku,
        AddonSku,
        BundleSku,
        StadiaSubscriptionSku,
        ExternalSubscriptionSku,
        AddonSubscriptionSku,
        AddonBundleSku,
        PreorderBundleSku,
        AliasSku,
        DeletedSku,
    ],
    Field(discriminator="sku_type"),
]

SKU_MODELS = {
    "Game": GameSku,
    "Addon": AddonSku,
    "Bundle": BundleSku,
    "StadiaSubscription": StadiaSubscriptionSku,
    "ExternalSubscription": ExternalSubscriptionSku,
    "AddonSubscription": AddonSubscriptionSku,
    "AddonBundle": AddonBundleSku,
    "PreorderBundle": PreorderBundleSku,
    "Alias": AliasSku,
    "Deleted": DeletedSku,
}


# --- Players ---

class Player(Model):
    player_id: PlayerId
    name: PlayerName
    number: PlayerNumber
    avatar_image_url: str
    played_game_ids: Optional[List[GameId]] = None
    friend_player_ids: Optional[List[PlayerId]] = None

    @property
    def gamertag(self) -> str:
        if self.number == "0000":
            return self.name
        return f"{self.name}#{self.number}"


class RecentPlayer(Model):
    player_id: PlayerId
    game_id: Optional[GameId] = None


class Friends(Model):
    player_id: Optional[PlayerId] = None
    player_ids: List[PlayerId]


class PlayerProgression(Model):
    game_ids: List[GameId]


# --- Catalog ---

class Game(Model):
    sku_id: SkuId
    sku_ids: List[SkuId]


class StoreListEntry(Model):
    sku_id: SkuId
    game_id: GameId


class OwnedGame(Model):
    game_id: GameId
    sku_id: SkuId


class Subscription(Model):
    """Placeholder; the raw response is kept on the record for re-parsing."""


class Capture(Model):
    capture_id: CaptureId
    game_id: GameId
    game_name: Optional[str] = None
    timestamp: int
    image_url: Optional[str] = None
    video_url: Optional[str] = None
