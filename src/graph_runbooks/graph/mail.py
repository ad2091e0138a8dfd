from __future__ import annotations

import base64
import html as html_lib
from typing import Any, Dict, List, Optional, Sequence

from ..auth.providers import AuthError
from ..logging import get_logger
from ..util.errors import ApiError, DeliveryError
from .clients import ApiClient, quote_segment

LOG = get_logger(__name__)

DEFAULT_ATTACHMENT_NAME = "report.html"
FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"


def _recipients(addresses: Sequence[str]) -> List[Dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


def build_mail_message(
    subject: str,
    html: str,
    recipients: Sequence[str],
    *,
    attach: bool = False,
    attachment_name: str = DEFAULT_ATTACHMENT_NAME,
) -> Dict[str, Any]:
    """
    Build a sendMail payload with the document as the HTML body. With attach=True
    the same document is also carried as a base64 file attachment; nothing else
    in the payload changes.
    """
    message: Dict[str, Any] = {
        "subject": subject,
        "body": {"contentType": "HTML", "content": html},
        "toRecipients": _recipients(recipients),
    }
    if attach:
        message["attachments"] = [
            {
                "@odata.type": FILE_ATTACHMENT_TYPE,
                "name": attachment_name,
                "contentType": "text/html",
                "contentBytes": base64.b64encode(html.encode("utf-8")).decode("ascii"),
            }
        ]
    return {"message": message, "saveToSentItems": False}


def send_report(
    client: ApiClient,
    sender: str,
    subject: str,
    html: str,
    recipients: Sequence[str],
    *,
    attach: bool = False,
    attachment_name: str = DEFAULT_ATTACHMENT_NAME,
) -> None:
    """
    Hand the report to the mail API. Acceptance by the API is the only
    confirmation; recipient-side delivery is not tracked.
    """
    addresses = [a.strip() for a in recipients if a and a.strip()]
    if not addresses:
        raise DeliveryError("No recipients configured for report delivery")
    if not (sender or "").strip():
        raise DeliveryError("No sender mailbox configured for report delivery")
    payload = build_mail_message(
        subject,
        html,
        addresses,
        attach=attach,
        attachment_name=attachment_name,
    )
    client.request(
        "POST",
        f"users/{quote_segment(sender.strip())}/sendMail",
        json_body=payload,
        error_cls=DeliveryError,
    )
    LOG.info(
        "Report mail accepted",
        extra={"recipients": len(addresses), "attachment": bool(attach)},
    )


def notify_failure(
    client: Optional[ApiClient],
    sender: Optional[str],
    recipients: Sequence[str],
    runbook: str,
    error: BaseException,
) -> bool:
    """
    Send a short failure notice after a fatal abort. Returns True when the mail
    API accepted it. Its own failure is logged and never raised, so the
    original error stays the one reported.
    """
    if client is None or not sender or not recipients:
        return False
    subject = f"[FAILED] {runbook} runbook"
    body = (
        "<html><body>"
        f"<p>The <b>{runbook}</b> runbook aborted before its report could be delivered.</p>"
        f"<p>Error: {html_lib.escape(type(error).__name__)}: {html_lib.escape(str(error))}</p>"
        "</body></html>"
    )
    try:
        send_report(client, sender, subject, body, recipients)
    except (ApiError, AuthError) as e:
        LOG.error("Failure notification not sent", extra={"error": str(e)})
        return False
    return True
