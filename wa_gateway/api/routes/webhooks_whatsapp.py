from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from wa_gateway.core.deps_api import get_notifier, get_processor
from wa_gateway.services.agent_callback import AgentNotifier
from wa_gateway.services.inbound import WebhookProcessor
from wa_gateway.services.webhook_verify import SIGNATURE_HEADER

router = APIRouter(prefix="/webhooks/whatsapp")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, x-hub-signature-256",
}


@router.get("", response_class=PlainTextResponse)
async def verify(request: Request, processor: WebhookProcessor = Depends(get_processor)):
    q = request.query_params
    return await processor.verify_subscription(
        q.get("hub.mode"),
        q.get("hub.verify_token"),
        q.get("hub.challenge"),
        q.get("phone_number_id"),
    )


@router.post("")
async def handle(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_processor),
    notifier: AgentNotifier = Depends(get_notifier),
):
    raw = await request.body()
    result = await processor.handle_delivery(raw, request.headers.get(SIGNATURE_HEADER))
    # AI callbacks go out after the provider has its acknowledgement.
    for cb in result.callbacks:
        background_tasks.add_task(notifier.deliver, cb)
    return PlainTextResponse("OK")


@router.options("")
async def preflight():
    return Response(status_code=204, headers=CORS_HEADERS)
