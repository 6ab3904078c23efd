"""Editable TOML price table and per-event cost calculation.

Prices are per 1,000,000 tokens, split into the four token classes that are
charged separately.
"""

from __future__ import annotations

import json
import sys
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

__all__ = [
    "ModelPrice",
    "PriceTable",
    "Calculator",
    "parse_table",
    "load",
    "load_or_seed",
    "merge_missing_models",
    "encode_table",
]

_DEFAULT_CURRENCY = "EUR"


@dataclass(frozen=True)
class ModelPrice:
    """Cost per 1,000,000 tokens for each token class."""

    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_create: float = 0.0


@dataclass
class PriceTable:
    """A parsed pricing file."""

    updated: str = ""
    currency: str = _DEFAULT_CURRENCY
    models: dict[str, ModelPrice] = field(default_factory=dict)


def _number(entry: dict, key: str, model: str) -> float:
    value = entry.get(key, 0.0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"models.{model}.{key} must be a number")
    return float(value)


def _text(data: dict, key: str) -> str:
    value = data.get(key, "")
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def parse_table(text: str | bytes) -> PriceTable:
    """Parse pricing TOML. Missing currency defaults to EUR."""
    if isinstance(text, bytes):
        text = text.decode("utf-8")
    data = tomllib.loads(text)
    raw_models = data.get("models", {})
    if not isinstance(raw_models, dict):
        raise ValueError("models must be a table")
    models = {}
    for name, entry in raw_models.items():
        if not isinstance(entry, dict):
            raise ValueError(f"models.{name} must be a table")
        models[name] = ModelPrice(
            input=_number(entry, "input", name),
            output=_number(entry, "output", name),
            cache_read=_number(entry, "cache_read", name),
            cache_create=_number(entry, "cache_create", name),
        )
    return PriceTable(
        updated=_text(data, "updated"),
        currency=_text(data, "currency") or _DEFAULT_CURRENCY,
        models=models,
    )


def load(path: str | Path) -> PriceTable:
    """Read and parse a pricing file."""
    return parse_table(Path(path).read_text(encoding="utf-8"))


def merge_missing_models(current: PriceTable, seed: PriceTable) -> tuple[PriceTable, bool]:
    """Add seed models absent from ``current`` without touching existing ones.

    Returns the merged table and whether anything was added.
    """
    models = dict(current.models)
    added = {name: price for name, price in seed.models.items() if name not in models}
    models.update(added)
    changed = bool(added)

    currency = current.currency or seed.currency or _DEFAULT_CURRENCY
    updated = seed.updated if changed and seed.updated else current.updated
    return PriceTable(updated=updated, currency=currency, models=models), changed


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def encode_table(table: PriceTable) -> str:
    """Render a table as pricing TOML with models in name order."""
    lines = [
        "# claudeops pricing table.",
        "#",
        "# Prices are in EUR per 1,000,000 tokens, split into the four token classes",
        "# Anthropic charges separately. Edit this file as Anthropic updates pricing.",
        "#",
        "# Currency: EUR. Adjust if you want USD — the calculator does not convert.",
        "",
        f"updated = {_quote(table.updated)}",
        f"currency = {_quote(table.currency)}",
        "",
    ]
    blocks = []
    for name in sorted(table.models):
        price = table.models[name]
        blocks.append(
            "\n".join(
                [
                    f"[models.{_quote(name)}]",
                    f"input         = {price.input:5.4f}",
                    f"output        = {price.output:5.4f}",
                    f"cache_read    = {price.cache_read:5.4f}",
                    f"cache_create  = {price.cache_create:5.4f}",
                ]
            )
        )
    return "\n".join(lines) + "\n" + "\n\n".join(blocks) + "\n"


def load_or_seed(path: str | Path, seed: str | bytes) -> PriceTable:
    """Load ``path``, creating it from ``seed`` when absent.

    Seed models missing from an existing file are merged in (and written
    back) without overwriting values the user has customised.
    """
    target = Path(path)
    seed_bytes = seed.encode("utf-8") if isinstance(seed, str) else bytes(seed)
    if not target.exists():
        target.write_bytes(seed_bytes)
        target.chmod(0o644)

    current = load(target)
    seed_table = parse_table(seed_bytes)
    merged, changed = merge_missing_models(current, seed_table)
    if changed:
        target.write_text(encode_table(merged), encoding="utf-8")
    return merged


class Calculator:
    """Compute event costs from a table, warning once per unknown model."""

    def __init__(self, table: PriceTable, on_warn: Callable[[str], None] | None = None):
        self.table = table
        self.on_warn = on_warn
        self._missing: set[str] = set()
        self._lock = threading.Lock()

    def cost_for(
        self,
        model: str,
        in_tokens: int,
        out_tokens: int,
        cache_read: int,
        cache_create: int,
    ) -> float | None:
        """Return the cost of one event, or None when the model is unpriced."""
        price = self.table.models.get(model)
        if price is None:
            with self._lock:
                if model not in self._missing:
                    self._missing.add(model)
                    if self.on_warn is not None:
                        self.on_warn(model)
                    else:
                        print(
                            f"claudeops: pricing has no entry for model {_quote(model)}",
                            file=sys.stderr,
                        )
            return None
        return (
            in_tokens * price.input / 1_000_000
            + out_tokens * price.output / 1_000_000
            + cache_read * price.cache_read / 1_000_000
            + cache_create * price.cache_create / 1_000_000
        )

    def updated(self) -> str:
        """The table's ``updated`` date."""
        return self.table.updated