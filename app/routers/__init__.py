"""
routers/ — HTTP surface of ProcureDesk.

One APIRouter per area (requests, chats, suppliers, whatsapp, audit,
settings, auth). Handlers bind typed input, hand off to services/ and wrap
the result with schemas.responses.ok().
"""
