"""
Optional external classifier for ambiguous update detections.

The classifier is best-effort: callers treat every ClassifierError as a
signal to fall back to pattern-only confidence.
"""

from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from scheduler.errors import ClassifierError

logger = structlog.get_logger(__name__)


class ClassifierOpinion(BaseModel):
    """A secondary opinion on whether a listing is an update."""
    is_update: bool = Field(default=False)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = Field(default="")


class ClassifierClient:
    """httpx client for the external classifier worker."""

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        min_confidence: float = 0.6,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.min_confidence = min_confidence
        self.logger = logger.bind(component="classifier_client")
        self.client_config: Dict[str, Any] = {"timeout": httpx.Timeout(timeout)}
        if transport is not None:
            self.client_config["transport"] = transport

    async def classify(self, title: str, context: Dict[str, Any]) -> ClassifierOpinion:
        """
        Ask the classifier whether a listing is an update of a tracked release.

        Args:
            title: Tracked release title
            context: Candidate listing title plus current version details

        Returns:
            The classifier's opinion for the candidate

        Raises:
            ClassifierError: on transport errors, bad payloads or a failed analysis
        """
        candidate = context.get("candidate_title", "")
        payload = {
            "gameTitle": title,
            "candidateTitles": [candidate],
            "context": {
                "currentVersion": context.get("current_version"),
                "currentBuild": context.get("current_build"),
                "releaseGroup": context.get("release_group"),
                "minConfidence": self.min_confidence,
            },
        }

        try:
            async with httpx.AsyncClient(**self.client_config) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning("Classifier request failed", error=str(e))
            raise ClassifierError(f"Classifier request failed: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            raise ClassifierError("Classifier reported failure", {"response": data})

        analysis = data.get("analysis") or []
        if not isinstance(analysis, list):
            raise ClassifierError("Classifier returned a malformed analysis", {"analysis": analysis})

        for item in analysis:
            if not isinstance(item, dict):
                continue
            if item.get("title") == candidate:
                try:
                    confidence = float(item.get("confidence", 0.0))
                except (TypeError, ValueError) as e:
                    raise ClassifierError("Classifier returned a non-numeric confidence") from e
                opinion = ClassifierOpinion(
                    is_update=bool(item.get("isUpdate")),
                    confidence=min(max(confidence, 0.0), 1.0),
                    reason=str(item.get("reason") or ""),
                )
                self.logger.debug("Classifier opinion", candidate=candidate,
                                  is_update=opinion.is_update, confidence=opinion.confidence)
                return opinion

        raise ClassifierError("Classifier returned no analysis for the candidate", {"candidate": candidate})
