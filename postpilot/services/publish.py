"""Publishing a post (optionally with one image) to a member's feed.

Image upload is a two-phase protocol: ``initializeUpload`` returns an upload
URL and an image URN, the bytes are PUT to the URL, and the URN is referenced
from the post. A failure anywhere in the image phase downgrades the post to
text-only instead of aborting it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from postpilot.errors import ContentError
from postpilot.services.content import validate_content
from postpilot.services.linkedin_api import (
    error_message,
    http_client,
    is_revoked,
    log_request_id,
    parse_json_safely,
    restli_headers,
)

logger = logging.getLogger(__name__)

POSTS_URL = "https://api.linkedin.com/v2/posts"
IMAGES_URL = "https://api.linkedin.com/v2/images"
POST_URL_TEMPLATE = "https://www.linkedin.com/feed/update/{post_id}"


@dataclass
class PublishResult:
    post_id: Optional[str] = None
    post_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    revoked: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _upload_image(c: httpx.Client, access_token: str, author_urn: str, image_url: str) -> Optional[str]:
    """Return the uploaded image URN, or None if any step failed."""
    try:
        init = c.post(
            f"{IMAGES_URL}?action=initializeUpload",
            headers={**restli_headers(access_token, versioned=False), "Content-Type": "application/json"},
            json={"initializeUploadRequest": {"owner": author_urn}},
        )
        init_data = parse_json_safely(init)
        if not init.is_success or not isinstance(init_data, dict):
            log_request_id(init)
            logger.warning("Image init failed: %s", init.status_code)
            return None

        value = init_data.get("value") or {}
        upload_url = value.get("uploadUrl")
        image_urn = value.get("image")
        if not upload_url or not image_urn:
            logger.warning("Image init response missing uploadUrl or image")
            return None

        source = c.get(image_url, follow_redirects=True)
        if not source.is_success:
            logger.warning("Fetching image %s failed: %s", image_url, source.status_code)
            return None

        upload = c.put(
            upload_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": source.headers.get("content-type") or "image/jpeg",
            },
            content=source.content,
        )
        if not upload.is_success:
            logger.warning("Image upload failed: %s", upload.status_code)
            return None
        return image_urn
    except httpx.HTTPError as e:
        logger.warning("Image upload aborted, posting without image: %s", e)
        return None


def build_post_payload(author_urn: str, commentary: str, image_urn: Optional[str] = None) -> dict:
    payload = {
        "author": author_urn,
        "commentary": commentary,
        "visibility": "PUBLIC",
        "distribution": {
            "feedDistribution": "MAIN_FEED",
            "targetEntities": [],
            "thirdPartyDistributionChannels": [],
        },
        "lifecycleState": "PUBLISHED",
    }
    if image_urn:
        payload["content"] = {"media": {"id": image_urn}}
    return payload


def publish_post(
    access_token: str,
    member_id: str,
    content: str,
    image_url: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> PublishResult:
    try:
        commentary = validate_content(content)
    except ContentError as e:
        return PublishResult(error=str(e), error_code=e.code)

    author_urn = f"urn:li:person:{member_id}"

    with http_client(client) as c:
        image_urn = _upload_image(c, access_token, author_urn, image_url) if image_url else None

        resp = c.post(
            POSTS_URL,
            headers={**restli_headers(access_token), "Content-Type": "application/json"},
            json=build_post_payload(author_urn, commentary, image_urn),
        )

    data = parse_json_safely(resp)
    log_request_id(resp)

    if not resp.is_success:
        revoked = is_revoked(data)
        logger.warning("LinkedIn post failed: status=%s revoked=%s", resp.status_code, revoked)
        return PublishResult(
            error=error_message(data, resp, "Failed to publish to LinkedIn"),
            error_code="revoked" if revoked else "provider_error",
            revoked=revoked,
        )

    post_id = (data.get("id") if isinstance(data, dict) else None) or resp.headers.get("x-restli-id")
    if not post_id:
        logger.error("LinkedIn accepted the post but returned no id (status %s)", resp.status_code)
        return PublishResult(error="LinkedIn did not return a post id", error_code="provider_error")

    return PublishResult(post_id=post_id, post_url=POST_URL_TEMPLATE.format(post_id=post_id))
