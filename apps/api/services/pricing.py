"""Static pricing table for models and purchasable credit packs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ModelPrice:
    model_key: str
    label: str
    amount_cents: int


@dataclass(frozen=True)
class CreditPack:
    id: str
    credits: int
    amount_cents: int
    name: str


MODEL_PRICING: Dict[str, ModelPrice] = {
    "google/nano-banana": ModelPrice("google/nano-banana", "google/nano-banana (2€)", 200),
    "batouresearch/magic-image-refiner": ModelPrice(
        "batouresearch/magic-image-refiner", "batouresearch/magic-image-refiner (3€)", 300
    ),
    "zsxkib/qwen2-vl": ModelPrice("zsxkib/qwen2-vl", "zsxkib/qwen2-vl (5€)", 500),
}

CREDIT_PACKS: List[CreditPack] = [
    CreditPack(id="pack_10", credits=10, amount_cents=1500, name="Pack 10 generations"),
    CreditPack(id="pack_25", credits=25, amount_cents=3200, name="Pack 25 generations"),
]


def get_model_price(model_key: str) -> Optional[ModelPrice]:
    return MODEL_PRICING.get(model_key)


def get_credit_pack(pack_id: Optional[str]) -> Optional[CreditPack]:
    return next((pack for pack in CREDIT_PACKS if pack.id == pack_id), None)
