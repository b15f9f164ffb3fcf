"""
routers/whatsapp.py — Gateway webhook and connection management

Business Rules:
- The webhook is unauthenticated and always answers 200 so the gateway
  does not retry; failures are logged by webhook_service
- КП documents are parsed in the same request with the injected gateway
  and LLM clients
- Status and webhook setup are admin tools

Called by: main.py (router mount)
Depends on: dependencies, services/webhook_service, utils/whapi_client
"""

import json

from fastapi import APIRouter, Depends, Request
from loguru import logger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db, utcnow
from ..dependencies import get_llm, get_whatsapp, require_admin, require_user
from ..exceptions import ExternalServiceError
from ..models import User
from ..rate_limit import limiter
from ..schemas.responses import ok
from ..services import webhook_service
from ..utils.llm_client import LLMClient
from ..utils.whapi_client import WhapiClient, WhapiError

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@router.get("/webhook")
async def webhook_check():
    return {"status": "active", "timestamp": utcnow().isoformat()}


@router.post("/webhook")
@limiter.limit(settings.rate_limit_webhook)
async def webhook(
    request: Request,
    db: Session = Depends(get_db),
    whatsapp: WhapiClient = Depends(get_whatsapp),
    llm: LLMClient = Depends(get_llm),
):
    try:
        payload = json.loads(await request.body() or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Webhook: unreadable body: {}", e)
        return {"success": True, "processed": 0}
    stats = await webhook_service.handle_payload(payload, db, whatsapp=whatsapp, llm=llm)
    return {"success": True, **stats}


@router.get("/status")
async def status(user: User = Depends(require_user), whatsapp: WhapiClient = Depends(get_whatsapp)):
    if not whatsapp.configured:
        return ok({"status": "not_configured"})
    try:
        return ok(await whatsapp.get_status())
    except WhapiError as e:
        raise ExternalServiceError("WhatsApp", str(e)) from e


@router.post("/webhook/setup")
async def setup_webhook(user: User = Depends(require_admin), whatsapp: WhapiClient = Depends(get_whatsapp)):
    url = f"{settings.app_url.rstrip('/')}/api/whatsapp/webhook"
    try:
        result = await whatsapp.setup_webhook(url)
    except WhapiError as e:
        raise ExternalServiceError("WhatsApp", str(e)) from e
    logger.info("WhatsApp webhook pointed at {}", url)
    return ok({"url": url, "gateway": result})
