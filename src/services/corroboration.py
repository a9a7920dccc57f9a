"""
Cross-referencing of recent incidents.

Two signals come out of one pass over the rolling incident pool:

* corroboration: independent reports of the same kind of incident close in space and time
  raise confidence with diminishing returns (``max_boost * (1 - 0.5**weight)``), so one
  source re-posting cannot inflate a score and confidence never goes down;
* coordination: clusters of near-identical text or images posted by different identities in
  a tight window are reported as ``CoordinationGroup`` records for human review.

Nothing here deletes or hides incidents; the engine only adjusts confidence, marks
verification and adds advisory flags.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence
from urllib.parse import urlparse

from src.services.config import PipelineConfig
from src.services.content_hashing import ContentHasher
from src.services.lsh_index import LSHIndex
from src.services.models import ArticleRef, CoordinationGroup, Incident

LOGGER = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

FLAG_COORDINATION = "coordination_suspected"
FLAG_MEDIA_AMPLIFICATION = "media_amplification"


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def hamming_distance(left: str | None, right: str | None) -> int | None:
    """Bit distance between two hex-encoded perceptual hashes; None when not comparable."""
    if not left or not right or len(left) != len(right):
        return None
    try:
        return bin(int(left, 16) ^ int(right, 16)).count("1")
    except ValueError:
        return None


def canonical_source(incident: Incident) -> str:
    """Identity of the underlying publication, ignoring scheme, ``www.``, query and fragment."""
    url = incident.source_article.url
    if url:
        parsed = urlparse(url if "://" in url else f"//{url}")
        host = (parsed.netloc or "").lower()
        if host.startswith("www."):
            host = host[4:]
        path = parsed.path.rstrip("/")
        if host or path:
            return f"{host}{path}"
    return f"article:{incident.source_article.id}"


@dataclass
class ScoredIncident:
    incident: Incident
    previous_confidence: int
    confidence: int
    verified: bool
    corroborator_ids: list[str] = field(default_factory=list)
    amplification_ids: list[str] = field(default_factory=list)
    corroborator_refs: list[ArticleRef] = field(default_factory=list)
    independent_reporters: int = 0

    @property
    def boost(self) -> int:
        return self.confidence - self.previous_confidence


@dataclass
class AnalysisResult:
    scored_incidents: list[ScoredIncident]
    coordination_groups: list[CoordinationGroup]


class _UnionFind:
    def __init__(self, items: Iterable[str]) -> None:
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left: str, right: str) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root != right_root:
            self.parent[max(left_root, right_root)] = min(left_root, right_root)

    def components(self) -> dict[str, list[str]]:
        groups: dict[str, list[str]] = {}
        for item in self.parent:
            groups.setdefault(self.find(item), []).append(item)
        return groups


class CorroborationEngine:
    def __init__(self, config: PipelineConfig | None = None, hasher: ContentHasher | None = None) -> None:
        self.config = config or PipelineConfig()
        self.hasher = hasher or ContentHasher(
            num_perm=self.config.num_perm,
            shingle_size=self.config.shingle_size,
            min_tokens=self.config.min_tokens,
            seed=self.config.hash_seed,
        )

    def analyze(self, incident_pool: Iterable[Incident], now: datetime | None = None) -> AnalysisResult:
        """Score every incident in the pool and flag coordinated clusters.

        When ``now`` is given the pool is first narrowed to the analysis window. Scores are
        computed against a snapshot of the pool and applied to the incidents afterwards.
        """
        pool = [incident for incident in incident_pool if incident is not None]
        if now is not None:
            horizon = now - self.config.analysis_window
            pool = [incident for incident in pool if incident.timestamp >= horizon]
        groups, membership = self.detect_coordination(pool)
        media_links = self._media_links(pool)
        scored = [self.corroborate(target, pool, membership, media_links) for target in pool]
        for item in scored:
            self._apply(item, membership, media_links)
        LOGGER.info(
            "Corroboration analysed %s incidents: %s boosted, %s verified, %s coordination groups",
            len(pool),
            sum(1 for item in scored if item.boost > 0),
            sum(1 for item in scored if item.verified),
            len(groups),
        )
        return AnalysisResult(scored_incidents=scored, coordination_groups=groups)

    # Corroboration -----------------------------------------------------------------------

    def _is_locatable(self, incident: Incident) -> bool:
        location = incident.location
        return location.has_coordinates and not location.placeholder

    def corroborate(
        self,
        target: Incident,
        pool: Sequence[Incident],
        membership: dict[str, str] | None = None,
        media_links: dict[str, set[str]] | None = None,
    ) -> ScoredIncident:
        membership = membership or {}
        media_links = media_links or {}
        previous = max(0, min(target.confidence, 100))
        result = ScoredIncident(
            incident=target,
            previous_confidence=previous,
            confidence=previous,
            verified=target.verified,
        )
        if not self._is_locatable(target):
            return result
        target_group = membership.get(target.id)
        amplified = media_links.get(target.id, set())
        window = self.config.corroboration_window
        reporter_weights: dict[str, float] = {}
        for other in pool:
            if other.id == target.id or other.type is not target.type or not self._is_locatable(other):
                continue
            if abs(other.timestamp - target.timestamp) > window:
                continue
            distance = haversine_km(
                target.location.lat, target.location.lon, other.location.lat, other.location.lon  # type: ignore[arg-type]
            )
            if distance > self.config.corroboration_radius_km:
                continue
            if other.reporter == target.reporter or canonical_source(other) == canonical_source(target):
                continue
            if other.id in amplified or (target_group is not None and membership.get(other.id) == target_group):
                result.amplification_ids.append(other.id)
                continue
            result.corroborator_ids.append(other.id)
            result.corroborator_refs.append(other.source_article)
            weight = 2.0 if other.verified else 1.0
            reporter_weights[other.reporter] = max(reporter_weights.get(other.reporter, 0.0), weight)
        if not reporter_weights:
            return result
        total_weight = sum(reporter_weights.values())
        boost = self.config.corroboration_max_boost * (1.0 - 0.5**total_weight)
        if len(reporter_weights) >= self.config.corroboration_bonus_reporters:
            boost += self.config.corroboration_bonus
        result.independent_reporters = len(reporter_weights)
        # Boosts are recomputed on every pass, so they stack on the pre-corroboration score.
        base = target.base_confidence if target.base_confidence is not None else previous
        result.confidence = max(previous, min(100, base + int(round(boost))))
        if (
            result.confidence >= self.config.verify_confidence
            and result.independent_reporters >= self.config.verify_min_reporters
        ):
            result.verified = True
        return result

    def _apply(self, item: ScoredIncident, membership: dict[str, str], media_links: dict[str, set[str]]) -> None:
        incident = item.incident
        if item.corroborator_ids and incident.base_confidence is None:
            incident.base_confidence = item.previous_confidence
        incident.confidence = max(incident.confidence, item.confidence)
        incident.verified = incident.verified or item.verified
        if item.corroborator_refs:
            incident.add_related(item.corroborator_refs)
        if incident.id in membership:
            incident.add_flag(FLAG_COORDINATION)
        if media_links.get(incident.id):
            incident.add_flag(FLAG_MEDIA_AMPLIFICATION)

    # Media -------------------------------------------------------------------------------

    def _media_links(self, pool: Sequence[Incident]) -> dict[str, set[str]]:
        """Incidents sharing a near-identical image with a different reporter in a short window."""
        links: dict[str, set[str]] = {}
        hashed = sorted((item for item in pool if item.image_hash), key=lambda item: item.timestamp)
        window = self.config.coordination_window
        for index, left in enumerate(hashed):
            for right in hashed[index + 1 :]:
                if right.timestamp - left.timestamp > window:
                    break
                if left.reporter == right.reporter:
                    continue
                distance = hamming_distance(left.image_hash, right.image_hash)
                if distance is None or distance > self.config.media_hamming_threshold:
                    continue
                links.setdefault(left.id, set()).add(right.id)
                links.setdefault(right.id, set()).add(left.id)
        return links

    # Coordination ------------------------------------------------------------------------

    def _content_text(self, incident: Incident) -> str:
        return incident.description or incident.title or ""

    def detect_coordination(self, pool: Sequence[Incident]) -> tuple[list[CoordinationGroup], dict[str, str]]:
        """Cluster near-identical content/media from distinct identities posted close together."""
        if len(pool) < 2:
            return [], {}
        by_id = {incident.id: incident for incident in pool}
        window = self.config.coordination_window
        union = _UnionFind(by_id)
        signals: dict[tuple[str, str], set[str]] = {}

        def link(left: Incident, right: Incident, signal: str) -> None:
            if left.id == right.id or abs(left.timestamp - right.timestamp) > window:
                return
            union.union(left.id, right.id)
            signals.setdefault(tuple(sorted((left.id, right.id))), set()).add(signal)  # type: ignore[arg-type]

        signatures: dict[str, tuple[int, ...]] = {}
        fingerprints: dict[str, list[Incident]] = {}
        index = LSHIndex(num_perm=self.hasher.num_perm, bands=self.config.lsh_bands, rows=self.config.lsh_rows)
        for incident in pool:
            text = self._content_text(incident)
            signature = self.hasher.signature(text)
            if signature is not None:
                signatures[incident.id] = signature
                index.insert(incident.id, signature)
                continue
            fingerprint = self.hasher.fingerprint(text)
            if fingerprint:
                fingerprints.setdefault(fingerprint, []).append(incident)
        for incident_id, signature in signatures.items():
            for candidate_id in index.candidates(signature):
                if candidate_id <= incident_id:
                    continue
                similarity = self.hasher.similarity(signature, signatures[candidate_id])
                if similarity >= self.config.coordination_similarity:
                    link(by_id[incident_id], by_id[candidate_id], "text")
        for members in fingerprints.values():
            for position, left in enumerate(members):
                for right in members[position + 1 :]:
                    link(left, right, "text")
        for incident_id, linked in self._media_links(pool).items():
            for other_id in linked:
                link(by_id[incident_id], by_id[other_id], "media")

        groups: list[CoordinationGroup] = []
        membership: dict[str, str] = {}
        for member_ids in union.components().values():
            if len(member_ids) < 2:
                continue
            members = sorted((by_id[item] for item in member_ids), key=lambda item: (item.timestamp, item.id))
            for burst in self._split_bursts(members):
                group = self._build_group(burst, signals)
                if group is None:
                    continue
                groups.append(group)
                for member in burst:
                    membership[member.id] = group.id
        groups.sort(key=lambda group: group.suspicion_score, reverse=True)
        return groups, membership

    def _split_bursts(self, members: list[Incident]) -> list[list[Incident]]:
        """Cut a time-ordered component into runs that each fit inside one coordination window.

        Links are pairwise, so a steady trickle of reposts can chain into a component spanning
        hours; each run starts at its first member and closes once the window is exceeded.
        """
        window = self.config.coordination_window
        bursts: list[list[Incident]] = []
        for member in members:
            if bursts and member.timestamp - bursts[-1][0].timestamp <= window:
                bursts[-1].append(member)
            else:
                bursts.append([member])
        return [burst for burst in bursts if len(burst) >= 2]

    def suspicion_score(self, size: int, spread: timedelta, distinct_reporters: int, media: bool) -> float:
        """0-100: bigger, tighter and more identity-diverse clusters are more suspicious."""
        if size < 2:
            return 0.0
        window_seconds = max(self.config.coordination_window.total_seconds(), 1.0)
        size_factor = 1.0 - 0.5 ** (size - 1)
        tightness = max(0.0, 1.0 - spread.total_seconds() / window_seconds)
        diversity = min(distinct_reporters / size, 1.0)
        score = 100.0 * (0.4 * size_factor + 0.35 * tightness + 0.25 * diversity)
        if media:
            score += 10.0
        return min(score, 100.0)

    def _build_group(
        self, members: list[Incident], signals: dict[tuple[str, str], set[str]]
    ) -> CoordinationGroup | None:
        reporters = {member.reporter for member in members}
        sources = {canonical_source(member) for member in members}
        if len(reporters) < 2 or len(sources) < 2:
            LOGGER.debug("Ignoring syndicated cluster of %s incidents from %s", len(members), sorted(sources))
            return None
        ids = {member.id for member in members}
        group_signals = sorted(
            {signal for pair, found in signals.items() if pair[0] in ids and pair[1] in ids for signal in found}
        )
        first_seen = members[0].timestamp
        last_seen = members[-1].timestamp
        spread = last_seen - first_seen
        score = self.suspicion_score(len(members), spread, len(reporters), "media" in group_signals)
        if score < self.config.suspicion_floor:
            LOGGER.debug("Cluster of %s incidents below suspicion floor (%.1f)", len(members), score)
            return None
        anchor = members[0]
        if "text" in group_signals:
            cluster_id = self.hasher.fingerprint(self._content_text(anchor)) or f"incident:{anchor.id}"
        else:
            cluster_id = f"media:{anchor.image_hash}"
        return CoordinationGroup(
            id=CoordinationGroup.make_id(ids),
            content_cluster_id=cluster_id,
            member_incident_ids=frozenset(ids),
            distinct_reporter_count=len(reporters),
            time_spread=spread,
            suspicion_score=score,
            first_seen=first_seen,
            last_seen=last_seen,
            signals=tuple(group_signals),
            shared_content_sample=self._content_text(anchor)[:140] or None,
        )
