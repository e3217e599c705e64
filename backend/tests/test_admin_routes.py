import io
import os
from datetime import datetime

import pytest


def image_file(name="art.jpg"):
    return (io.BytesIO(b"fake image"), name, "image/jpeg")


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin)


@pytest.fixture
def make_contact(db):
    def _make_contact(**overrides):
        now = datetime.utcnow()
        document = {
            "name": "Ravi",
            "email": "ravi@example.com",
            "subject": "general",
            "message": "Do you ship to Pune?",
            "images": [],
            "status": "new",
            "created_at": now,
            "updated_at": now,
        }
        document.update(overrides)
        document["_id"] = db.contacts.insert_one(document).inserted_id
        return document

    return _make_contact


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/api/admin/analytics"),
        ("get", "/api/admin/orders"),
        ("get", "/api/admin/products"),
        ("get", "/api/admin/contacts"),
        ("post", "/api/hero-images"),
    ],
)
def test_admin_routes_reject_regular_users(client, buyer, auth_headers, method, path):
    response = getattr(client, method)(path, headers=auth_headers(buyer))
    assert response.status_code == 403


def test_admin_routes_require_token(client):
    assert client.get("/api/admin/orders").status_code == 401


def test_create_update_and_delete_product(client, admin_headers, media_store, db):
    response = client.post(
        "/api/admin/products",
        headers=admin_headers,
        data={
            "name": "Pattachitra Krishna",
            "description": "Natural colours on cloth.",
            "price": "4200",
            "discount_price": "3999",
            "category": "painting",
            "featured": "true",
            "image": image_file(),
            "additionalImages": [image_file("detail.jpg")],
        },
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["featured"] is True
    assert product["discountPrice"] == 3999.0
    assert len(product["allImages"]) == 2
    first_image_id = product["allImages"][0]["id"]

    response = client.put(
        f"/api/admin/products/{product['id']}",
        headers=admin_headers,
        data={"price": "4500", "in_stock": "false", "image": image_file("new.jpg")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    updated = response.get_json()["product"]
    assert updated["price"] == 4500.0
    assert updated["inStock"] is False
    assert updated["name"] == "Pattachitra Krishna"
    assert not os.path.exists(os.path.join(media_store.upload_folder, first_image_id))

    response = client.delete(f"/api/admin/products/{product['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert db.products.count_documents({}) == 0
    assert os.listdir(media_store.upload_folder) == []


def test_create_product_requires_image_and_valid_fields(client, admin_headers, media_store):
    response = client.post(
        "/api/admin/products",
        headers=admin_headers,
        data={"name": "No Picture", "description": "Missing image.", "price": "100", "category": "painting"},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Product image is required"

    response = client.post(
        "/api/admin/products",
        headers=admin_headers,
        data={
            "name": "Too Cheap",
            "description": "Discount above price.",
            "price": "100",
            "discount_price": "150",
            "category": "painting",
            "image": image_file(),
        },
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert os.listdir(media_store.upload_folder) == []


def test_admin_product_listing_includes_out_of_stock(client, admin_headers, make_product):
    make_product(name="Available")
    make_product(name="Sold Out", in_stock=False)
    body = client.get("/api/admin/products", headers=admin_headers).get_json()
    assert body["pagination"]["total"] == 2


def test_admin_orders_listing_and_transitions(
    client, admin_headers, buyer, auth_headers, make_product, shipping_address, gateway
):
    headers = auth_headers(buyer)
    body = client.post(
        "/api/orders",
        headers=headers,
        json={
            "items": [{"productId": str(make_product()["_id"]), "quantity": 1}],
            "shippingAddress": shipping_address,
        },
    ).get_json()
    order_id = body["order"]["id"]

    listing = client.get("/api/admin/orders?status=pending", headers=admin_headers).get_json()
    assert listing["orders"][0]["customer"] == {"name": buyer["name"], "email": buyer["email"]}
    assert client.get("/api/admin/orders?status=lost", headers=admin_headers).status_code == 400

    response = client.put(
        f"/api/admin/orders/{order_id}", headers=admin_headers, json={"status": "delivered"}
    )
    assert response.status_code == 409

    response = client.put(
        f"/api/admin/orders/{order_id}", headers=admin_headers, json={"status": "cancelled"}
    )
    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "cancelled"

    response = client.put(
        "/api/admin/orders/64b7f0c2a1b2c3d4e5f60718",
        headers=admin_headers,
        json={"status": "cancelled"},
    )
    assert response.status_code == 404


def test_contact_status_updates_and_resolution(client, admin_headers, make_contact, media_store, db):
    path = os.path.join(media_store.upload_folder, "image_contact.jpg")
    with open(path, "wb") as handle:
        handle.write(b"img")
    contact = make_contact(images=[{"id": "image_contact.jpg", "url": "u", "filename": "c.jpg"}])

    response = client.put(
        f"/api/admin/contacts/{contact['_id']}", headers=admin_headers, json={"status": "read"}
    )
    assert response.status_code == 200
    assert response.get_json()["contact"]["status"] == "read"

    response = client.put(
        f"/api/admin/contacts/{contact['_id']}", headers=admin_headers, json={"status": "archived"}
    )
    assert response.status_code == 400

    response = client.put(
        f"/api/admin/contacts/{contact['_id']}", headers=admin_headers, json={"status": "resolved"}
    )
    assert response.status_code == 200
    assert response.get_json()["deleted"] is True
    assert db.contacts.count_documents({}) == 0
    assert not os.path.exists(path)


def test_contact_listing_filters(client, admin_headers, make_contact):
    make_contact(subject="order")
    make_contact(subject="press", status="read")
    body = client.get("/api/admin/contacts?status=new", headers=admin_headers).get_json()
    assert [contact["subject"] for contact in body["contacts"]] == ["order"]


def test_contact_reply(client, admin_headers, make_contact, notifier, db):
    contact = make_contact()

    response = client.post(
        f"/api/admin/contacts/{contact['_id']}/reply",
        headers=admin_headers,
        json={"reply": "Yes, we ship across India."},
    )
    assert response.status_code == 200
    assert notifier.sent[-1][0] == "contact-reply"
    assert notifier.sent[-1][1] == "ravi@example.com"
    assert db.contacts.find_one({"_id": contact["_id"]})["status"] == "replied"

    notifier.fail = True
    other = make_contact(email="other@example.com")
    response = client.post(
        f"/api/admin/contacts/{other['_id']}/reply",
        headers=admin_headers,
        json={"reply": "Thanks!"},
    )
    assert response.status_code == 502
    assert db.contacts.find_one({"_id": other["_id"]})["status"] == "new"


def test_hero_image_lifecycle(client, admin_headers, media_store, db):
    response = client.post(
        "/api/hero-images",
        headers=admin_headers,
        data={"title": "Monsoon Collection", "category": "painting", "order": "2", "image": image_file()},
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    hero = response.get_json()["image"]
    assert hero["order"] == 2

    client.post(
        "/api/hero-images",
        headers=admin_headers,
        data={"category": "gallery", "order": "1", "image": image_file("g.jpg")},
        content_type="multipart/form-data",
    )
    listing = client.get("/api/hero-images").get_json()["images"]
    assert [image["order"] for image in listing] == [1, 2]

    response = client.put(
        f"/api/hero-images/{hero['id']}", headers=admin_headers, json={"subtitle": "New art"}
    )
    assert response.status_code == 200
    assert response.get_json()["image"]["subtitle"] == "New art"
    assert response.get_json()["image"]["title"] == "Monsoon Collection"

    response = client.delete(f"/api/hero-images/{hero['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert db.hero_images.count_documents({}) == 1
    assert len(os.listdir(media_store.upload_folder)) == 1


def test_hero_image_requires_title_outside_gallery(client, admin_headers):
    response = client.post(
        "/api/hero-images",
        headers=admin_headers,
        data={"category": "apparel", "image": image_file()},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400


def test_analytics_overview(
    client, admin_headers, buyer, make_product, make_contact, db
):
    product = make_product()
    make_contact()
    now = datetime.utcnow()
    for status, total in (("paid", 1180.0), ("pending", 590.0)):
        db.orders.insert_one(
            {
                "user_id": buyer["_id"],
                "items": [{"product_id": str(product["_id"]), "price": 1000.0, "quantity": 1}],
                "total_amount": total,
                "status": status,
                "gateway_order_id": f"order_{status}",
                "shipping_address": {},
                "created_at": now,
            }
        )

    body = client.get("/api/admin/analytics", headers=admin_headers).get_json()
    assert body["overview"]["totalProducts"] == 1
    assert body["overview"]["totalOrders"] == 2
    assert body["overview"]["pendingOrders"] == 1
    assert body["overview"]["newContacts"] == 1
    assert body["productsByCategory"] == [{"category": "painting", "count": 1}]
    assert body["monthlyOrders"] == [
        {"year": now.year, "month": now.month, "count": 2, "revenue": 1180.0}
    ]
    assert len(body["recentOrders"]) == 2
