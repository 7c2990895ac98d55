# tests/api/test_health_http.py
from __future__ import annotations

from giftflow import __version__


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "version": __version__, "env": "test"}


async def test_metrics_exports_business_counters(client):
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "giftflow_order_transitions_total" in resp.text
    assert "giftflow_settlements_total" in resp.text
