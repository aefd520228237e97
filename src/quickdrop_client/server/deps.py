from fastapi import Request

from quickdrop_client.client import DropClient

PRINCIPAL_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")
MAX_PRINCIPAL_LENGTH = 128


def get_drop_client(request: Request) -> DropClient:
    return request.app.state.drop_client


def extract_client_principal(request: Request) -> str:
    """Первый непустой из прокси-заголовков, иначе адрес пира, иначе 'unknown'."""
    for header in PRINCIPAL_HEADERS:
        candidate = request.headers.get(header)
        if candidate and candidate.strip():
            return candidate.split(",")[0].strip()[:MAX_PRINCIPAL_LENGTH]
    if request.client and request.client.host:
        return request.client.host[:MAX_PRINCIPAL_LENGTH]
    return "unknown"
