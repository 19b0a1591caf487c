"""
Device classification pipeline.

Classification is a pure function of the evidence on a Device: an ordered
list of rules inspects a precomputed context and adds weighted candidates
to an accumulator. A rule may mark its candidate authoritative, which
stops evaluation immediately.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ._types import (
    Classification,
    ClassificationConfidence,
    Device,
    DeviceFormFactor,
    NetworkService,
    ServiceType,
)
from .apple_models import AppleModelDatabase
from .oui_lookup import OUILookup
from .vendor_model import extract_vendor_model

logger = logging.getLogger(__name__)

NO_MATCH_REASON = "No rules matched"
AUTHORITATIVE_SUFFIX = " (authoritative)"


@dataclass
class RuleContext:
    """Lower-cased, precomputed view of a device for rule evaluation."""
    device: Device
    vendor: str
    host: str
    services: list[NetworkService]
    service_types: set[ServiceType]
    ports: set[int]
    fingerprints: dict[str, str]
    fingerprint_model: str
    fingerprint_model_raw: str
    fingerprint_corpus: str
    apple_models: AppleModelDatabase

    @classmethod
    def build(
        cls,
        device: Device,
        oui: Optional[OUILookup] = None,
        apple_models: Optional[AppleModelDatabase] = None,
    ) -> "RuleContext":
        fp_vendor, fp_model = extract_vendor_model(device.fingerprints)
        vendor = device.vendor or fp_vendor or (oui.vendor_for(device.mac_address) if oui else None) or ""
        model_raw = (fp_model or "").strip()
        values = [value.lower() for value in device.fingerprints.values() if value]
        if device.model_hint:
            values.append(device.model_hint.lower())
        return cls(
            device=device,
            vendor=vendor.lower(),
            host=(device.hostname or "").lower(),
            services=list(device.services),
            service_types={s.type for s in device.services},
            ports={p.number for p in device.open_ports},
            fingerprints=dict(device.fingerprints),
            fingerprint_model=model_raw.lower(),
            fingerprint_model_raw=model_raw,
            fingerprint_corpus=" ".join(values),
            apple_models=apple_models or AppleModelDatabase(),
        )

    def has_raw_type(self, fragment: str) -> bool:
        return any(fragment in (s.raw_type or "").lower() for s in self.services)


@dataclass
class Candidate:
    """One proposed classification."""
    form_factor: Optional[DeviceFormFactor]
    raw_type: Optional[str]
    confidence: ClassificationConfidence
    reason: str
    sources: list[str] = field(default_factory=list)

    def to_classification(self, reason: Optional[str] = None) -> Classification:
        return Classification(
            form_factor=self.form_factor,
            raw_type=self.raw_type,
            confidence=self.confidence,
            reason=reason if reason is not None else self.reason,
            sources=list(self.sources),
        )


class ClassificationAccumulator:
    """Collects candidates from rules and picks the winner."""

    def __init__(self):
        self.candidates: list[Candidate] = []
        self.authoritative: Optional[Candidate] = None

    @property
    def short_circuited(self) -> bool:
        return self.authoritative is not None

    def add(
        self,
        form_factor: Optional[DeviceFormFactor],
        raw_type: Optional[str],
        confidence: ClassificationConfidence,
        reason: str,
        sources: Sequence[str] = (),
        authoritative: bool = False,
    ) -> Candidate:
        candidate = Candidate(form_factor, raw_type, confidence, reason, list(sources))
        self.candidates.append(candidate)
        # First authoritative candidate sticks
        if authoritative and self.authoritative is None:
            self.authoritative = candidate
        return candidate

    def result(self) -> Classification:
        if self.authoritative is not None:
            return self.authoritative.to_classification(
                self.authoritative.reason + AUTHORITATIVE_SUFFIX
            )
        if not self.candidates:
            return Classification(
                form_factor=None,
                raw_type=None,
                confidence=ClassificationConfidence.UNKNOWN,
                reason=NO_MATCH_REASON,
                sources=[],
            )
        ranked = sorted(
            self.candidates,
            key=lambda c: (
                -c.confidence.priority,
                0 if c.form_factor is not None else 1,
                -len(c.sources),
            ),
        )
        return ranked[0].to_classification()


class ClassificationRule(ABC):
    """Base class for classification rules."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this rule."""
        pass

    @abstractmethod
    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        """Inspect the context and add candidates to the accumulator."""
        pass


class ClassificationPipeline:
    """
    Runs an ordered list of rules against a device.

    Args:
        rules: Rules in evaluation order (defaults to the standard set)
        oui: Vendor lookup used when the device carries no vendor
        apple_models: Apple identifier database for fingerprint models
    """

    def __init__(
        self,
        rules: Optional[Sequence[ClassificationRule]] = None,
        oui: Optional[OUILookup] = None,
        apple_models: Optional[AppleModelDatabase] = None,
    ):
        if rules is None:
            from .rules import default_rules
            rules = default_rules()
        self.rules = list(rules)
        self.oui = oui
        self.apple_models = apple_models or AppleModelDatabase()

    def classify(self, device: Device) -> Classification:
        context = RuleContext.build(device, self.oui, self.apple_models)
        accumulator = ClassificationAccumulator()
        for rule in self.rules:
            rule.evaluate(context, accumulator)
            if accumulator.short_circuited:
                logger.debug(f"Rule {rule.name} is authoritative for {device.id}")
                break
        return accumulator.result()
