"""Tests for the checkout endpoints."""

from api_helpers import ADDRESS, CART, READY_COMMANDS, create_ready_session


class TestCreateCheckout:
    """Tests for POST /checkout."""

    def test_create_session(self, client) -> None:
        """A valid cart opens a PENDING session."""
        response = client.post("/checkout", json={"cart": CART, "metadata": {"channel": "agent"}})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["is_ready"] is False
        assert data["cart"]["total"] == {"amount": "100.00", "currency": "USD"}
        assert data["metadata"] == {"channel": "agent"}
        assert data["expires_at"] is not None

    def test_client_discount_rejected(self, client) -> None:
        """Discounts cannot be injected through the cart."""
        cart = {**CART, "discount": {"amount": "10.00", "currency": "USD"}}
        response = client.post("/checkout", json={"cart": cart})

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_inconsistent_total_rejected(self, client) -> None:
        """A supplied total that does not match the items is rejected."""
        cart = {**CART, "total": {"amount": "90.00", "currency": "USD"}}
        response = client.post("/checkout", json={"cart": cart})

        assert response.status_code == 400
        assert response.json()["error_code"] == "CART_INVARIANT_VIOLATION"

    def test_empty_cart_rejected(self, client) -> None:
        """Carts need at least one item."""
        response = client.post("/checkout", json={"cart": {"items": []}})
        assert response.status_code == 400

    def test_unsupported_currency(self, make_client) -> None:
        """Currencies outside the merchant's list are rejected."""
        cart = {"items": [{**CART["items"][0], "unit_price": {"amount": "50.00", "currency": "JPY"}}]}
        with make_client(supported_currencies=["USD"]) as client:
            response = client.post("/checkout", json={"cart": cart})
        assert response.status_code == 400


class TestCheckoutQueries:
    """Tests for fetching and listing sessions."""

    def test_get_session(self, client) -> None:
        """Sessions can be fetched by id."""
        session_id = client.post("/checkout", json={"cart": CART}).json()["id"]
        response = client.get(f"/checkout/{session_id}")
        assert response.status_code == 200
        assert response.json()["id"] == session_id

    def test_unknown_session_envelope(self, client) -> None:
        """Unknown sessions return 404 in the error envelope."""
        response = client.get("/checkout/missing", headers={"X-Request-ID": "req-42"})

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["request_id"] == "req-42"
        assert "message" in body and "details" in body
        assert response.headers["X-Request-ID"] == "req-42"

    def test_list_sessions(self, client) -> None:
        """Sessions are listed with pagination info."""
        for _ in range(3):
            client.post("/checkout", json={"cart": CART})

        response = client.get("/checkout", params={"limit": 2})

        data = response.json()
        assert len(data["items"]) == 2
        assert data["has_more"] is True
        assert client.get("/checkout", params={"status": "READY"}).json()["items"] == []

    def test_unknown_route_envelope(self, client) -> None:
        """Unknown routes also use the error envelope."""
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error_code"] == "ERROR"


class TestUpdateCheckout:
    """Tests for PATCH /checkout/{id}."""

    def test_commands_make_session_ready(self, client) -> None:
        """Address, shipping and payment method make the session READY."""
        session = create_ready_session(client)

        assert session["status"] == "READY"
        assert session["is_ready"] is True
        assert session["cart"]["shipping"] == {"amount": "5.99", "currency": "USD"}
        assert session["cart"]["total"] == {"amount": "105.99", "currency": "USD"}

    def test_failed_command_changes_nothing(self, client) -> None:
        """One invalid command rejects the whole batch."""
        session_id = client.post("/checkout", json={"cart": CART}).json()["id"]
        response = client.patch(
            f"/checkout/{session_id}",
            json={
                "commands": [
                    {"type": "set_shipping_address", "address": ADDRESS},
                    {"type": "select_shipping_option", "option_id": "teleport"},
                ]
            },
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert client.get(f"/checkout/{session_id}").json()["shipping_address"] is None

    def test_unknown_command_type(self, client) -> None:
        """Unknown command types fail validation."""
        session_id = client.post("/checkout", json={"cart": CART}).json()["id"]
        response = client.patch(f"/checkout/{session_id}", json={"commands": [{"type": "fly"}]})
        assert response.status_code == 400

    def test_shipping_options(self, client) -> None:
        """Shipping options are listed for a session with an address."""
        session = create_ready_session(client)
        response = client.get(f"/checkout/{session['id']}/shipping-options")
        assert [o["id"] for o in response.json()["options"]] == ["standard", "express", "overnight"]

    def test_payment_methods(self, client) -> None:
        """Available payment methods are listed."""
        session = create_ready_session(client)
        response = client.get(f"/checkout/{session['id']}/payment-methods")
        assert "card" in [m["type"] for m in response.json()["methods"]]


class TestDiscountEndpoints:
    """Tests for discount codes."""

    def test_apply_and_remove(self, client) -> None:
        """Applying SAVE20 takes 20% off the subtotal; removing restores it."""
        session = create_ready_session(client)

        response = client.post(f"/checkout/{session['id']}/discount", json={"code": "save20"})
        assert response.status_code == 200
        data = response.json()
        assert data["applied"]["amount"] == {"amount": "20.00", "currency": "USD"}
        assert data["session"]["cart"]["total"] == {"amount": "85.99", "currency": "USD"}

        discount_id = data["applied"]["discount_id"]
        response = client.delete(f"/checkout/{session['id']}/discount/{discount_id}")
        assert response.status_code == 200
        assert response.json()["cart"]["total"] == {"amount": "105.99", "currency": "USD"}

    def test_invalid_code(self, client) -> None:
        """Unknown codes are rejected."""
        session = create_ready_session(client)
        response = client.post(f"/checkout/{session['id']}/discount", json={"code": "FREE"})
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_DISCOUNT_CODE"

    def test_validate_code(self, client) -> None:
        """Validation estimates without applying."""
        session = create_ready_session(client)
        response = client.post(f"/checkout/{session['id']}/discount/validate", json={"code": "SAVE10"})

        data = response.json()
        assert data["valid"] is True
        assert data["estimated_amount"] == {"amount": "10.00", "currency": "USD"}
        assert client.get(f"/checkout/{session['id']}").json()["applied_discounts"] == []


class TestCompleteCheckout:
    """Tests for POST /checkout/{id}/complete."""

    def test_complete_creates_order(self, client, simulator) -> None:
        """Completion charges the total and returns the order."""
        session = create_ready_session(client)

        response = client.post(f"/checkout/{session['id']}/complete")

        assert response.status_code == 200
        data = response.json()
        assert data["order_number"].startswith("ORD-")
        assert data["replayed"] is False
        assert data["order"]["status"] == "CONFIRMED"
        assert data["order"]["totals"]["amount_paid"] == {"amount": "105.99", "currency": "USD"}
        assert client.get(f"/checkout/{session['id']}").json()["status"] == "COMPLETED"
        assert simulator.call_count("capture_payment") == 1

    def test_second_complete_returns_same_order(self, client, simulator) -> None:
        """Completing again returns the existing order without charging."""
        session = create_ready_session(client)
        first = client.post(f"/checkout/{session['id']}/complete").json()

        second = client.post(f"/checkout/{session['id']}/complete").json()

        assert second["order_id"] == first["order_id"]
        assert second["replayed"] is True
        assert simulator.call_count("create_payment_intent") == 1

    def test_declined_payment(self, client, simulator) -> None:
        """A decline returns the provider message and keeps the session open."""
        session = create_ready_session(client)
        simulator.should_fail_payment = True
        simulator.failure_message = "Insufficient funds"

        response = client.post(f"/checkout/{session['id']}/complete")

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "PAYMENT_FAILED"
        assert body["message"] == "Insufficient funds"
        assert client.get(f"/checkout/{session['id']}").json()["status"] == "READY"

    def test_payment_method_in_body(self, client) -> None:
        """A payment method can be supplied at completion."""
        session_id = client.post("/checkout", json={"cart": CART}).json()["id"]
        client.patch(
            f"/checkout/{session_id}",
            json={"commands": READY_COMMANDS["commands"][:2]},
        )

        response = client.post(
            f"/checkout/{session_id}/complete",
            json={"payment_method": {"type": "card", "token": "tok_visa"}},
        )

        assert response.status_code == 200

    def test_cancel(self, client) -> None:
        """Open sessions can be cancelled but not completed afterwards."""
        session = create_ready_session(client)

        response = client.post(f"/checkout/{session['id']}/cancel", json={"reason": "changed mind"})
        assert response.json()["status"] == "CANCELLED"

        response = client.post(f"/checkout/{session['id']}/complete")
        assert response.status_code == 409
        assert response.json()["error_code"] == "CHECKOUT_NOT_EDITABLE"
