"""auth/ -- Authentication core: Telegram initData login, sessions, device transfer.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config from the FastAPI dependency module. It does NOT import from api/
or web/. api/ and web/ import from auth/, not the other way around.
"""
