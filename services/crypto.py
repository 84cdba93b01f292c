from __future__ import annotations

import base64
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken

from data.store import AccountRecord
from engine.errors import InvalidConfig


@dataclass(frozen=True)
class AccountCredentials:
    exchange: str
    api_key: str
    api_secret: str
    passphrase: str | None = None
    proxy_url: str | None = None


def build_fernet(key: str | None) -> Fernet | None:
    if not key:
        return None
    raw = key.encode("utf-8")
    if len(raw) == 32:
        raw = base64.urlsafe_b64encode(raw)
    return Fernet(raw)


def encrypt(fernet: Fernet | None, payload: str) -> str:
    if not fernet:
        return payload
    return fernet.encrypt(payload.encode("utf-8")).decode("utf-8")


def decrypt(fernet: Fernet | None, payload: str) -> str:
    if not fernet:
        return payload
    try:
        return fernet.decrypt(payload.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise InvalidConfig("Stored credentials cannot be decrypted with the configured key") from exc


def account_credentials(fernet: Fernet | None, account: AccountRecord) -> AccountCredentials:
    return AccountCredentials(
        exchange=account.exchange.lower(),
        api_key=decrypt(fernet, account.api_key_encrypted),
        api_secret=decrypt(fernet, account.api_secret_encrypted),
        passphrase=decrypt(fernet, account.passphrase_encrypted) if account.passphrase_encrypted else None,
        proxy_url=account.proxy_url,
    )
