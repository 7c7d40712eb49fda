import json
import httpx
from loguru import logger

from ...core.config import settings
from .hub import ERRORS_TOPIC, NotificationHub, Subscription

# Post an Adaptive Card to a Teams Incoming Webhook when the pipeline
# dead-letters an event, so operators see failures without tailing logs.

ADAPTIVE_CARD_TEMPLATE = {
    "type": "message",
    "attachments": [{
        "contentType": "application/vnd.microsoft.card.adaptive",
        "content": {
            "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
            "type": "AdaptiveCard",
            "version": "1.4",
            "body": [
                {"type": "TextBlock", "weight": "Bolder", "size": "Medium", "text": "Pipeline Error"},
                {"type": "FactSet", "facts": []}
            ],
            "actions": []
        }
    }]
}

CARD_FIELDS = ["error", "event_type", "batch_id", "document_id", "attempts", "timestamp"]


class TeamsErrorNotifier:
    def __init__(self, webhook_url: str | None = None, api_base_url: str | None = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.teams_webhook_url
        self.api_base_url = api_base_url or settings.api_base_url

    def build_card(self, message: dict) -> dict:
        card = json.loads(json.dumps(ADAPTIVE_CARD_TEMPLATE))
        content = card["attachments"][0]["content"]
        facts = content["body"][1]["facts"]
        for k in CARD_FIELDS:
            if message.get(k) is not None:
                facts.append({"title": k, "value": str(message[k])})

        if message.get("batch_id"):
            content["actions"].append({
                "type": "Action.OpenUrl",
                "title": "Open batch",
                "url": f"{self.api_base_url}/batches/{message['batch_id']}"
            })
        return card

    async def post_error_card(self, message: dict) -> dict:
        if not self.webhook_url:
            return {"status": "skipped", "reason": "TEAMS_WEBHOOK_URL not set"}

        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.post(self.webhook_url, json=self.build_card(message))
            if r.status_code >= 400:
                logger.warning("Teams webhook rejected error card", http_status=r.status_code)
            return {"status": "sent", "http_status": r.status_code}

    async def _on_error(self, topic: str, message: dict) -> None:
        try:
            await self.post_error_card(message)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to post Teams error card: {e}")

    def attach(self, hub: NotificationHub) -> Subscription | None:
        """Subscribe to the errors topic (no-op when no webhook is configured)"""
        if not self.webhook_url:
            return None
        return hub.subscribe(ERRORS_TOPIC, self._on_error)
