import pytest

from conftest import at
from models import db
from models.booking import Booking
from models.pet import Pet


def _window(start, end):
    return {"start_time": start.isoformat(), "end_time": end.isoformat()}


@pytest.fixture
def client_http(login, customer):
    return login(customer)


@pytest.fixture
def pet_id(client_http):
    resp = client_http.post("/pets", json={"name": "Rex", "breed": "Beagle", "age_years": 3})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["id"]


def test_client_registers_and_updates_pet(client_http, customer, pet_id):
    listed = client_http.get("/pets").get_json()
    assert [(p["id"], p["name"], p["species"], p["owner_id"]) for p in listed] == [
        (pet_id, "Rex", "dog", customer.id),
    ]

    resp = client_http.patch(f"/pets/{pet_id}", json={"weight_kg": 11.5, "special_requirements": "Anxious"})
    assert resp.status_code == 200
    assert resp.get_json()["weight_kg"] == 11.5
    assert resp.get_json()["special_requirements"] == "Anxious"

    assert client_http.patch(f"/pets/{pet_id}", json={"name": None}).status_code == 400


def test_pet_payload_is_validated(client_http):
    assert client_http.post("/pets", json={"breed": "Poodle"}).status_code == 400
    assert client_http.post("/pets", json={"name": "Rex", "age_years": -1}).status_code == 400


def test_pets_are_private_to_their_owner(pet_id, login, stranger, admin):
    http = login(stranger)
    assert http.get("/pets").get_json() == []
    assert http.get(f"/pets/{pet_id}").status_code == 403
    assert http.patch(f"/pets/{pet_id}", json={"name": "Mine"}).status_code == 403
    assert http.delete(f"/pets/{pet_id}").status_code == 403

    assert login(admin).get(f"/pets/{pet_id}").status_code == 200
    assert login(stranger).get("/pets/999").status_code == 404


def test_booking_for_own_pet(client_http, pet_id, resource, provider, login, mail):
    assert login(provider).get(f"/pets/{pet_id}").status_code == 403

    resp = client_http.post("/bookings", json={"resource_id": resource.id, "pet_id": pet_id, **_window(at(10), at(11))})
    assert resp.status_code == 201
    assert resp.get_json()["booking"]["pet_id"] == pet_id

    # the provider can now see the pet booked with them
    assert login(provider).get(f"/pets/{pet_id}").get_json()["name"] == "Rex"


def test_booking_for_someone_elses_pet_is_refused(pet_id, login, stranger, resource, mail):
    resp = login(stranger).post("/bookings", json={"resource_id": resource.id, "pet_id": pet_id, **_window(at(10), at(11))})

    assert resp.status_code == 403
    assert resp.get_json()["code"] == "unauthorized"
    assert Booking.query.count() == 0


def test_booking_for_unknown_pet_is_not_found(client_http, resource, mail):
    resp = client_http.post("/bookings", json={"resource_id": resource.id, "pet_id": 4040, **_window(at(10), at(11))})

    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Pet not found"


def test_reschedule_keeps_the_pet(lifecycle, customer, resource):
    pet = Pet(owner_id=customer.id, name="Milo", species="cat")
    db.session.add(pet)
    db.session.commit()
    booking = lifecycle.create_booking(customer.id, resource.id, at(10), at(11), pet_id=pet.id)

    lifecycle.reschedule(booking.id, customer.id, "client", at(14), at(15))

    replacement = db.session.get(Booking, booking.rescheduled_to_id)
    assert replacement.pet_id == pet.id


def test_pet_with_bookings_cannot_be_deleted(client_http, pet_id, resource, mail):
    client_http.post("/bookings", json={"resource_id": resource.id, "pet_id": pet_id, **_window(at(10), at(11))})

    resp = client_http.delete(f"/pets/{pet_id}")
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "conflict"

    spare = client_http.post("/pets", json={"name": "Spot"}).get_json()["id"]
    assert client_http.delete(f"/pets/{spare}").status_code == 200
    assert db.session.get(Pet, spare) is None
