"""Unit tests for EdamamProvider (httpx.MockTransport)."""

from typing import Callable

import httpx
import pytest

from nutrisync.domain.shared.errors import (
    AuthenticationError,
    ConnectionLostError,
    ContentRejectedError,
    RateLimitedError,
    TransientError,
)
from nutrisync.infrastructure.providers.edamam import EdamamProvider, map_hint

HINTS = {
    "hints": [
        {
            "food": {
                "label": "Banana",
                "nutrients": {"ENERC_KCAL": 89, "PROCNT": 1.09, "CHOCDF": 22.84, "FAT": 0.33, "SUGAR": 12.23},
            },
            "measures": [{"label": "Whole", "weight": 118}],
        },
        {"food": {"label": "", "nutrients": {}}},
        {"food": {"label": "Oatmeal", "nutrients": {"ENERC_KCAL": 68}}},
    ]
}


def make_provider(handler: Callable[[httpx.Request], httpx.Response]) -> EdamamProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EdamamProvider(app_id="id", app_key="key", client=client, failure_threshold=50)


class TestMapHint:
    def test_scales_by_measure_weight(self) -> None:
        item = map_hint(HINTS["hints"][0])

        assert item.name == "Banana"
        assert item.calories == 105
        assert item.protein == 1.3
        assert item.portion_size == "118g"
        assert item.confidence == 0.8

    def test_missing_nutrients_stay_unknown(self) -> None:
        item = map_hint(HINTS["hints"][2])

        assert item.calories == 68
        assert item.protein is None
        assert item.portion_size == "100g"

    def test_unlabelled_hint_dropped(self) -> None:
        assert map_hint(HINTS["hints"][1]) is None


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_uploads_image_with_credentials(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=HINTS)

        analysis = await make_provider(handler).analyze(b"jpeg", "image/jpeg")

        assert [i.name for i in analysis.items] == ["Banana", "Oatmeal"]
        assert analysis.version == "edamam-v2"
        assert seen[0].headers["app_id"] == "id"
        assert b'filename="food.jpeg"' in seen[0].content

    @pytest.mark.asyncio
    async def test_no_hints_gives_no_items(self) -> None:
        analysis = await make_provider(lambda r: httpx.Response(200, json={"hints": []})).analyze(b"x", "image/png")

        assert analysis.items == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, expected",
        [(401, AuthenticationError), (429, RateLimitedError), (503, TransientError), (400, ContentRejectedError)],
    )
    async def test_status_mapping(self, status, expected) -> None:
        provider = make_provider(lambda r: httpx.Response(status, json={}))

        with pytest.raises(expected):
            await provider.analyze(b"x", "image/jpeg")

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self) -> None:
        provider = make_provider(lambda r: httpx.Response(200, text="<html>"))

        with pytest.raises(TransientError):
            await provider.analyze(b"x", "image/jpeg")

    @pytest.mark.asyncio
    async def test_connection_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ConnectionLostError):
            await make_provider(handler).analyze(b"x", "image/jpeg")

    def test_requires_credentials(self, monkeypatch) -> None:
        monkeypatch.delenv("EDAMAM_APP_ID", raising=False)
        monkeypatch.delenv("EDAMAM_APP_KEY", raising=False)

        with pytest.raises(ValueError):
            EdamamProvider()
