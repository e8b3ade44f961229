def test_get_cart_creates_empty_cart(client, db, user):
    user_id, headers = user
    resp = client.get("/api/cart", headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["items"] == []
    assert data["cart_total"] == 0
    assert db["cart"].count_documents({"user_id": user_id}) == 1

    client.get("/api/cart", headers=headers)
    assert db["cart"].count_documents({"user_id": user_id}) == 1


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401


def test_add_to_cart_populates_products(client, user, make_product):
    _, headers = user
    product_id = make_product(price=250.0)
    resp = client.post("/api/cart", json={"product_id": product_id, "quantity": 2}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["items"][0]["product"]["id"] == product_id
    assert data["items"][0]["quantity"] == 2
    assert data["cart_total"] == 500
    assert data["total_items"] == 2


def test_adding_same_product_accumulates(client, user, make_product):
    _, headers = user
    product_id = make_product(stock=5)
    client.post("/api/cart", json={"product_id": product_id, "quantity": 2}, headers=headers)
    resp = client.post("/api/cart", json={"product_id": product_id, "quantity": 3}, headers=headers)
    items = resp.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 5


def test_cart_quantity_cannot_exceed_stock(client, user, make_product):
    _, headers = user
    product_id = make_product(stock=5)
    resp = client.post("/api/cart", json={"product_id": product_id, "quantity": 6}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Only 5 units available in stock"

    client.post("/api/cart", json={"product_id": product_id, "quantity": 4}, headers=headers)
    resp = client.post("/api/cart", json={"product_id": product_id, "quantity": 2}, headers=headers)
    assert resp.status_code == 400


def test_add_requires_positive_quantity(client, user, make_product):
    _, headers = user
    product_id = make_product()
    resp = client.post("/api/cart", json={"product_id": product_id, "quantity": 0}, headers=headers)
    assert resp.status_code == 400


def test_add_unknown_product(client, user):
    _, headers = user
    resp = client.post("/api/cart", json={"product_id": "64b7f0c2a1b2c3d4e5f60718", "quantity": 1}, headers=headers)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Product not found"


def test_update_cart_item(client, user, make_product):
    _, headers = user
    product_id = make_product(stock=5)
    client.post("/api/cart", json={"product_id": product_id, "quantity": 1}, headers=headers)

    resp = client.put("/api/cart", json={"product_id": product_id, "quantity": 4}, headers=headers)
    assert resp.json()["data"]["items"][0]["quantity"] == 4

    too_many = client.put("/api/cart", json={"product_id": product_id, "quantity": 9}, headers=headers)
    assert too_many.status_code == 400

    removed = client.put("/api/cart", json={"product_id": product_id, "quantity": 0}, headers=headers)
    assert removed.json()["data"]["items"] == []


def test_update_without_cart_or_item(client, user, make_product):
    _, headers = user
    product_id = make_product()
    resp = client.put("/api/cart", json={"product_id": product_id, "quantity": 1}, headers=headers)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Cart not found"

    client.get("/api/cart", headers=headers)
    resp = client.put("/api/cart", json={"product_id": product_id, "quantity": 1}, headers=headers)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Item not found in cart"


def test_remove_from_cart(client, user, make_product):
    _, headers = user
    first = make_product()
    second = make_product(name="Cable")
    client.post("/api/cart", json={"product_id": first, "quantity": 1}, headers=headers)
    client.post("/api/cart", json={"product_id": second, "quantity": 1}, headers=headers)

    resp = client.delete(f"/api/cart/{first}", headers=headers)
    assert [it["product"]["id"] for it in resp.json()["data"]["items"]] == [second]

    again = client.delete(f"/api/cart/{first}", headers=headers)
    assert again.status_code == 404


def test_deleted_products_drop_out_of_cart(client, db, user, make_product):
    _, headers = user
    keep = make_product(price=100.0)
    gone = make_product(name="Discontinued")
    client.post("/api/cart", json={"product_id": keep, "quantity": 1}, headers=headers)
    client.post("/api/cart", json={"product_id": gone, "quantity": 1}, headers=headers)
    db["product"].delete_one({"name": "Discontinued"})

    data = client.get("/api/cart", headers=headers).json()["data"]
    assert [it["product"]["id"] for it in data["items"]] == [keep]
    assert data["cart_total"] == 100
