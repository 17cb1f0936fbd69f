"""User preferences kept in the local cache (currently: display currency)."""

from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from xpenza.config import get_settings
from xpenza.models.currency import Currency, find_currency
from xpenza.services.storage import LocalCacheInterface, StorageError

logger = structlog.get_logger("xpenza.sync.preferences")


class Preferences(BaseModel):
    currency_code: str


class PreferencesStore:
    """Currency preference, read once from the cache and written on change."""

    def __init__(
        self,
        cache: LocalCacheInterface,
        settings_key: Optional[str] = None,
        default_currency: Optional[str] = None,
    ):
        settings = get_settings()
        self._cache = cache
        self._key = settings_key or settings.cache.settings_key
        default = find_currency(default_currency or settings.app.default_currency)
        if default is None:
            raise ValueError(f"Unsupported default currency: {default_currency}")
        self._currency = self._load() or default

    @property
    def currency(self) -> Currency:
        return self._currency

    def set_currency(self, code: str) -> Currency:
        """
        Switch the display currency.

        Raises:
            ValueError: If the code is not a supported currency
        """
        currency = find_currency(code)
        if currency is None:
            raise ValueError(f"Unsupported currency: {code}")
        self._currency = currency
        try:
            self._cache.set_item(
                self._key, Preferences(currency_code=currency.code).model_dump_json()
            )
        except StorageError as e:
            logger.warning("preferences_write_failed", error=str(e))
        return currency

    def _load(self) -> Optional[Currency]:
        try:
            raw = self._cache.get_item(self._key)
        except StorageError as e:
            logger.warning("preferences_read_failed", error=str(e))
            return None
        if not raw:
            return None
        try:
            preferences = Preferences.model_validate_json(raw)
        except ValidationError:
            logger.warning("preferences_unreadable", key=self._key)
            return None
        return find_currency(preferences.currency_code)
