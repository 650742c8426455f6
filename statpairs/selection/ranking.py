"""Asset grouping, tradability and composite ranking for pair selection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

from statpairs.core.config import CandidateConfig
from statpairs.core.models import Asset
from statpairs.stats.primitives import zscores

UNKNOWN_GROUP = "Unknown"
GLOBAL_GROUP = "ALL"


class GroupTag(str, Enum):
    SECTOR = "sector"
    ECOSYSTEM = "ecosystem"
    ASSET_TYPE = "assetType"
    GLOBAL = "global"


@dataclass(frozen=True)
class AssetGroup:
    tag: GroupTag
    key: str
    assets: list[Asset]

    @property
    def label(self) -> str:
        return f"{self.tag.value}:{self.key}"


@dataclass(frozen=True)
class RankedAsset:
    asset: Asset
    score: float
    index: int
    rsi: float

    @property
    def symbol(self) -> str:
        return self.asset.symbol


def group_assets(assets: list[Asset], include_global: bool = False) -> list[AssetGroup]:
    """Partition by sector, then ecosystem, then asset type.

    Unlabelled assets land in ``"Unknown"``. Groups keep first-seen order, and
    the optional global group comes last.
    """
    by_dim: dict[GroupTag, dict[str, list[Asset]]] = {
        GroupTag.SECTOR: {},
        GroupTag.ECOSYSTEM: {},
        GroupTag.ASSET_TYPE: {},
    }
    for a in assets:
        by_dim[GroupTag.SECTOR].setdefault(a.sector or UNKNOWN_GROUP, []).append(a)
        by_dim[GroupTag.ECOSYSTEM].setdefault(a.ecosystem or UNKNOWN_GROUP, []).append(a)
        by_dim[GroupTag.ASSET_TYPE].setdefault(a.asset_type or UNKNOWN_GROUP, []).append(a)

    groups = [
        AssetGroup(tag, key, items)
        for tag, buckets in by_dim.items()
        for key, items in buckets.items()
    ]
    if include_global:
        groups.append(AssetGroup(GroupTag.GLOBAL, GLOBAL_GROUP, list(assets)))
    return groups


def is_tradable(asset: Asset, config: CandidateConfig) -> bool:
    if config.no_filters:
        return True
    return (
        asset.liquidity_tier in config.tradable_tiers
        and asset.symbol.endswith(config.quote_suffix)
    )


def capped_zscores(values: list[float], cap: float) -> np.ndarray:
    z = zscores(values, use_sample_std=True)
    if z.size == 0:
        return np.zeros(len(values))
    return np.clip(z, -cap, cap)


def rank_assets(assets: list[Asset], rsi_values: list[float], config: CandidateConfig) -> list[RankedAsset]:
    """Weighted sum of capped z-scores, highest first. Ties keep input order.

    Missing metrics count as 0 before z-scoring.
    """
    cap = config.zscore_cap
    liq = capped_zscores([a.metrics.liquidity_score or 0.0 for a in assets], cap)
    vol = capped_zscores([a.metrics.atr_pct_14 or 0.0 for a in assets], cap)
    fund = capped_zscores([a.metrics.funding_mean or 0.0 for a in assets], cap)
    qv = capped_zscores([a.metrics.quote_volume or 0.0 for a in assets], cap)
    rsi = capped_zscores(list(rsi_values), cap)

    composite = (
        config.w_liquidity * liq
        + config.w_volatility * vol
        + config.w_funding * fund
        + config.w_quote_volume * qv
        + config.w_rsi * rsi
    )
    ranked = [
        RankedAsset(asset=a, score=float(composite[i]), index=i, rsi=float(rsi_values[i]))
        for i, a in enumerate(assets)
    ]
    # sorted() is stable
    return sorted(ranked, key=lambda r: r.score, reverse=True)


def select_sides(ranked: list[RankedAsset], n: int) -> tuple[list[RankedAsset], list[RankedAsset]]:
    """Top-N and bottom-N (bottom listed weakest first)."""
    k = min(n, len(ranked))
    top = ranked[:k]
    bottom = list(reversed(ranked[-k:])) if k else []
    return top, bottom


def selection_pool(
    ranked: list[RankedAsset],
    top: list[RankedAsset],
    bottom: list[RankedAsset],
    config: CandidateConfig,
) -> list[RankedAsset]:
    """Assets whose returns enter the correlation matrix, deduplicated by symbol."""
    if config.pairing_mode == "pool":
        source = ranked[: min(config.side_candidates * 2, len(ranked))]
    else:
        source = top + bottom
    seen: set[str] = set()
    pool = []
    for r in source:
        if r.symbol in seen:
            continue
        seen.add(r.symbol)
        pool.append(r)
    return pool


def pair_combinations(
    top: list[RankedAsset],
    bottom: list[RankedAsset],
    pool: list[RankedAsset],
    config: CandidateConfig,
) -> list[tuple[RankedAsset, RankedAsset]]:
    """``(lo, hi)`` legs to evaluate: bottom x top for extremes, all pool pairs otherwise."""
    if config.pairing_mode == "extremes":
        return [(lo, hi) for lo in bottom for hi in top]
    return [
        (pool[i], pool[j])
        for i in range(len(pool))
        for j in range(i + 1, len(pool))
    ]
