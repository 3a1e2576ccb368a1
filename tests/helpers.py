PASSWORD = "Passw0rd!"


def shipping_payload(method="cod", city="Hồ Chí Minh", email="alice@example.com"):
    return {
        "customer_name": "Alice Nguyen",
        "customer_email": email,
        "customer_phone": "0901234567",
        "shipping_address": {
            "full_name": "Alice Nguyen",
            "phone": "0901234567",
            "address_line": "12 Nguyễn Huệ, Bến Nghé",
            "city": city,
            "district": "Quận 1",
            "ward": "Phường Bến Nghé",
            "postal_code": "700000",
        },
        "payment_method": method,
        "notes": "",
    }
