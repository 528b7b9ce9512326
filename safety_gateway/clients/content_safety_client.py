# safety_gateway/clients/content_safety_client.py
from typing import Tuple, Any, List, Optional

import requests

from safety_gateway.core.config import settings
from safety_gateway.core.logger import logger

SUBSCRIPTION_KEY_HEADER = "Ocp-Apim-Subscription-Key"

AnalyzeResult = Tuple[int, Any]

# --- Mock Fallback ---
_MOCK_KEYWORDS = {
    "Hate": ["hate", "racist", "bigot"],
    "SelfHarm": ["suicide", "self-harm", "kill myself"],
    "Sexual": ["nsfw", "porn", "explicit"],
    "Violence": ["kill", "attack", "shoot"],
}

def _mock_body(categories: List[str], text: str = "") -> dict:
    lowered = text.lower()
    analysis = []
    for category in categories:
        hit = any(word in lowered for word in _MOCK_KEYWORDS.get(category, []))
        analysis.append({"category": category, "severity": 4 if hit else 0})
    return {"blocklistsMatch": [], "categoriesAnalysis": analysis, "mock": True}

def _is_configured() -> bool:
    return bool(settings.azure_content_safety_endpoint and settings.azure_content_safety_key)

def _analyze_url(operation: str) -> str:
    endpoint = settings.azure_content_safety_endpoint.rstrip("/")
    return (
        f"{endpoint}/contentsafety/{operation}"
        f"?api-version={settings.azure_content_safety_api_version}"
    )

def _decode_body(response: requests.Response) -> Optional[Any]:
    """
    Decode the response body.

    Successful responses must be JSON; a 2xx that cannot be decoded raises
    ``ValueError``. Error bodies are returned verbatim: decoded JSON when
    possible, raw text otherwise, ``None`` when empty.
    """
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        if response.ok:
            raise ValueError(
                f"Content Safety returned a non-JSON body with status {response.status_code}"
            )
        return response.text

def _post(operation: str, payload: dict) -> AnalyzeResult:
    headers = {
        SUBSCRIPTION_KEY_HEADER: settings.azure_content_safety_key,
        "Content-Type": "application/json",
    }
    response = requests.post(
        _analyze_url(operation),
        headers=headers,
        json=payload,
        timeout=settings.azure_content_safety_timeout,
    )

    logger.info(
        f"Content Safety {operation} returned {response.status_code}",
        extra={"status": response.status_code}
    )
    return response.status_code, _decode_body(response)

# --- Public API ---
def analyze_text(text: str, categories: List[str], output_type: str) -> AnalyzeResult:
    """
    Classify text with Azure AI Content Safety.

    Returns:
        Tuple of (HTTP status code, decoded body or None)
    """
    if not _is_configured():
        logger.warning("Content Safety endpoint not configured, using mock text analysis")
        return 200, _mock_body(categories, text)

    return _post("text:analyze", {
        "text": text,
        "categories": categories,
        "outputType": output_type,
    })

def analyze_image(base64_content: str, categories: List[str], output_type: str) -> AnalyzeResult:
    """
    Classify a base64-encoded image with Azure AI Content Safety.

    Returns:
        Tuple of (HTTP status code, decoded body or None)
    """
    if not _is_configured():
        logger.warning("Content Safety endpoint not configured, using mock image analysis")
        return 200, _mock_body(categories)

    return _post("image:analyze", {
        "image": {"content": base64_content},
        "categories": categories,
        "outputType": output_type,
    })
