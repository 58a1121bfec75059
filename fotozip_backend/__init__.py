"""Backend for the FotoZip upload-and-zip service.

Route handlers in ``api`` stay thin; the pieces they orchestrate live here:
- workspace: upload/archive directories, retention sweep, archive lookup
- intake: multipart validation and streaming writes
- sessions: in-memory registry of per-chatId uploads
- zip_utils: streaming ZIP builder
- whatsapp: webhook handshake, message parsing, media download

Session keys (chatId) are caller-chosen and not secret; this service has no
authentication, so deploy it behind something that does.
"""
