"""
Simple simulator: walk one batch through harvest, verification and pickup.
Run:
    API=http://127.0.0.1:8000 python scripts/simulate_flow.py
"""
import base64
import os
import random
import time

import requests

API = os.getenv("API", "http://127.0.0.1:8000")


def main():
    r = requests.get(f"{API}/api/seed")
    print("Seed:", r.status_code)
    users = {u["role"]: u["id"] for u in r.json()["users"]}
    quantity = round(random.uniform(10, 60), 1)

    rr = requests.post(f"{API}/api/v1/harvests", json={
        "actor_user_id": users["FARMER"],
        "product_name": "Cabai Merah",
        "location": "Garut, Jawa Barat",
        "harvest_date": time.strftime("%Y-%m-%d"),
        "quantity": quantity,
        "unit": "kg",
    })
    print("harvest:", rr.status_code, rr.text)
    harvest = rr.json()
    batch_id = harvest["batch_id"]

    rr = requests.get(f"{API}/api/v1/transactions/{harvest['tx_hash']}")
    print("decode:", rr.status_code, rr.text)

    rr = requests.post(f"{API}/api/v1/batches/{batch_id}/verify", json={
        "actor_user_id": users["ADMIN"],
        "certificate_name": "Organic Indonesia",
        "expiry_date": "2027-01-01",
        "certificate_file": base64.b64encode(b"%PDF-1.4 demo certificate").decode(),
        "notes": "Lab sample OK",
    })
    print("verify:", rr.status_code, rr.text)

    rr = requests.post(f"{API}/api/v1/logistics/pickup", json={
        "actor_user_id": users["CENTRAL_OPERATOR"],
        "batch_id": batch_id,
        "quantity": quantity,
        "unit": "kg",
        "gps_coordinates": "-7.2279,107.9087",
        "notes": "Truck B-1234-XY",
    })
    print("pickup:", rr.status_code, rr.text)

    # the reconciler catches up in the background
    time.sleep(2)
    rr = requests.get(f"{API}/api/v1/batches/{batch_id}/history")
    print("history:", rr.status_code, rr.text)


if __name__ == "__main__":
    main()
