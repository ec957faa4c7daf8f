def test_chef_creates_meal_with_own_identity(client, auth, chef, db):
    body = {"name": "Shorshe Ilish", "price": 14.5, "ingredients": ["hilsa", "mustard"], "estimatedDeliveryTime": "45 min"}
    resp = client.post("/meals", json=body, headers=auth(chef["email"], "chef"))
    assert resp.status_code == 201
    meal = client.get(f"/meals/{resp.json()['insertedId']}").json()
    assert meal["chefId"] == "chef-1234"
    assert meal["chefEmail"] == chef["email"]
    assert meal["chefName"] == "Rahima"
    assert meal["rating"] == 0


def test_meal_price_must_be_positive(client, auth, chef):
    resp = client.post("/meals", json={"name": "Free lunch", "price": 0}, headers=auth(chef["email"], "chef"))
    assert resp.status_code == 422


def test_fraud_chef_cannot_create_meal(client, auth, admin, chef):
    client.patch(f"/admin/users/{chef['email']}/fraud", headers=auth(admin["email"], "admin"))
    resp = client.post("/meals", json={"name": "Dal", "price": 5}, headers=auth(chef["email"], "chef"))
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_list_meals_search_sort_and_paginate(client, chef, make_meal):
    make_meal(chef, name="Beef Curry", price=15)
    make_meal(chef, name="Fish curry", price=5)
    make_meal(chef, name="Khichuri", price=10)

    body = client.get("/meals", params={"sort": "asc"}).json()
    assert body["total"] == 3
    assert [m["price"] for m in body["meals"]] == [5, 10, 15]

    body = client.get("/meals", params={"sort": "desc", "limit": 2, "page": 2}).json()
    assert [m["name"] for m in body["meals"]] == ["Fish curry"]
    assert body["page"] == 2

    body = client.get("/meals", params={"search": "CURRY"}).json()
    assert body["total"] == 2
    assert {m["name"] for m in body["meals"]} == {"Beef Curry", "Fish curry"}


def test_unknown_meal_is_not_found(client):
    assert client.get("/meals/64b7f0c2a1b2c3d4e5f60718").status_code == 404


def test_only_owning_chef_updates_or_deletes_meal(client, auth, chef, meal_id, make_account):
    other = make_account("other@example.com", role="chef", chef_id="chef-9999")
    assert client.patch(f"/meals/{meal_id}", json={"price": 1}, headers=auth(other["email"], "chef")).status_code == 403
    assert client.delete(f"/meals/{meal_id}", headers=auth(other["email"], "chef")).status_code == 403

    resp = client.patch(f"/meals/{meal_id}", json={"price": 12}, headers=auth(chef["email"], "chef"))
    assert resp.status_code == 200
    assert resp.json()["price"] == 12

    resp = client.delete(f"/meals/{meal_id}", headers=auth(chef["email"], "chef"))
    assert resp.json() == {"deletedCount": 1}
    assert client.get(f"/meals/{meal_id}").status_code == 404


def test_chef_lists_own_meals(client, auth, chef, make_meal, make_account):
    other = make_account("other@example.com", role="chef", chef_id="chef-9999")
    make_meal(chef)
    make_meal(other, name="Pitha")
    meals = client.get("/chef/meals", headers=auth(chef["email"], "chef")).json()
    assert [m["chefId"] for m in meals] == ["chef-1234"]


def test_reviews_update_meal_rating(client, auth, customer, meal_id, make_account):
    bob = make_account("bob@example.com")
    for email, rating in ((customer["email"], 4), (bob["email"], 5)):
        resp = client.post("/reviews", json={"foodId": meal_id, "rating": rating, "comment": "tasty"}, headers=auth(email))
        assert resp.status_code == 201

    assert client.get(f"/meals/{meal_id}").json()["rating"] == 4.5
    reviews = client.get("/reviews", params={"foodId": meal_id}).json()
    assert len(reviews) == 2
    assert {r["reviewerEmail"] for r in reviews} == {customer["email"], bob["email"]}


def test_review_rating_out_of_range(client, auth, customer, meal_id):
    resp = client.post("/reviews", json={"foodId": meal_id, "rating": 6}, headers=auth(customer["email"]))
    assert resp.status_code == 422


def test_only_author_edits_or_deletes_review(client, auth, customer, meal_id, make_account):
    bob = make_account("bob@example.com")
    review_id = client.post(
        "/reviews", json={"foodId": meal_id, "rating": 2}, headers=auth(customer["email"])
    ).json()["insertedId"]

    assert client.patch(f"/reviews/{review_id}", json={"rating": 5}, headers=auth(bob["email"])).status_code == 403
    assert client.delete(f"/reviews/{review_id}", headers=auth(bob["email"])).status_code == 403

    resp = client.patch(f"/reviews/{review_id}", json={"rating": 3}, headers=auth(customer["email"]))
    assert resp.status_code == 200
    assert resp.json()["rating"] == 3
    assert client.get(f"/meals/{meal_id}").json()["rating"] == 3

    resp = client.delete(f"/reviews/{review_id}", headers=auth(customer["email"]))
    assert resp.json() == {"deletedCount": 1}
    assert client.get(f"/meals/{meal_id}").json()["rating"] == 0


def test_favorite_duplicate_conflicts(client, auth, customer, meal_id):
    first = client.post("/favorites", json={"foodId": meal_id}, headers=auth(customer["email"]))
    assert first.status_code == 201
    second = client.post("/favorites", json={"foodId": meal_id}, headers=auth(customer["email"]))
    assert second.status_code == 409
    assert second.json()["error"] == "conflict"

    favorites = client.get("/favorites", headers=auth(customer["email"])).json()
    assert len(favorites) == 1
    assert favorites[0]["mealName"] == "Chicken Biryani"


def test_deleting_someone_elses_favorite_is_forbidden(client, auth, customer, meal_id, make_account):
    bob = make_account("bob@example.com")
    favorite_id = client.post("/favorites", json={"foodId": meal_id}, headers=auth(customer["email"])).json()["insertedId"]

    resp = client.delete(f"/favorites/{favorite_id}", headers=auth(bob["email"]))
    assert resp.status_code == 403

    resp = client.delete(f"/favorites/{favorite_id}", headers=auth(customer["email"]))
    assert resp.json() == {"deletedCount": 1}


def test_admin_stats(client, auth, admin, chef, customer, meal_id, place_order):
    place_order(customer["email"], meal_id)
    stats = client.get("/admin/stats", headers=auth(admin["email"], "admin")).json()
    assert stats["users"] == 3
    assert stats["chefs"] == 1
    assert stats["meals"] == 1
    assert stats["orders"] == 1
    assert stats["ordersByStatus"]["pending"] == 1
    assert stats["totalPaid"] == 0


def test_root(client):
    assert client.get("/").json() == {"message": "HomeDish Hub server running"}
