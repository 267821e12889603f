"""
API Integration Tests — Product catalog.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
class TestProductsAPI:
    async def test_create_and_get_product(self, client: AsyncClient):
        resp = await client.post(
            "/api/v1/products/",
            json={"sku": "CEF-250", "name": "Cefalexin 250mg", "category": "Antibiotics"},
        )
        assert resp.status_code == 201
        product_id = resp.json()["product_id"]

        resp = await client.get(f"/api/v1/products/{product_id}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Cefalexin 250mg"

    async def test_duplicate_sku_conflict(self, client: AsyncClient, product):
        resp = await client.post("/api/v1/products/", json={"sku": product.sku, "name": "Another"})
        assert resp.status_code == 409

    async def test_list_filters_by_category(self, client: AsyncClient, product, second_product):
        resp = await client.get("/api/v1/products/", params={"category": "Analgesics"})
        assert resp.status_code == 200
        assert [p["sku"] for p in resp.json()] == [second_product.sku]

    async def test_get_product_not_found(self, client: AsyncClient):
        resp = await client.get("/api/v1/products/00000000-0000-0000-0000-000000000099")
        assert resp.status_code == 404

    async def test_empty_sku_rejected(self, client: AsyncClient):
        resp = await client.post("/api/v1/products/", json={"sku": "", "name": "Nameless"})
        assert resp.status_code == 422


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
