"""
Simple simulator: walk one batch through producer -> carrier -> retailer.
Run:
    python scripts/simulate_chain.py [API_URL]
"""
import sys
import time
import random
import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

def jitter(lat, lng):
    return round(lat + random.uniform(-0.01, 0.01), 5), round(lng + random.uniform(-0.01, 0.01), 5)

def main():
    lat, lng = jitter(19.8167, 99.55)
    r = requests.post(f"{API}/api/batches", json={
        "producer_id": "farmer-sim",
        "crop": "Coffee",
        "variety": "Arabica Catimor",
        "quantity": f"{random.randint(200, 800)}kg",
        "origin_description": "Plot 7, Doi Chang",
        "harvest_timestamp": time.strftime("%Y-%m-%d"),
        "latitude": lat,
        "longitude": lng,
    })
    print("batch:", r.status_code, r.text)
    r.raise_for_status()
    batch_id = r.json()["id"]

    lat, lng = jitter(18.7883, 98.9853)
    rr = requests.post(f"{API}/api/pickups", json={
        "batch_id": batch_id,
        "actor_name": "Fast-Track Logistics",
        "temperature": f"{random.randint(3, 6)}°C",
        "latitude": lat,
        "longitude": lng,
    })
    print("pickup:", rr.status_code, rr.text)

    # retail shelves often have no GPS fix
    rr = requests.post(f"{API}/api/receipts", json={
        "batch_id": batch_id,
        "actor_name": "Nimman Fresh Market",
        "shelf_location": f"Aisle {random.randint(1, 9)}",
    })
    print("receipt:", rr.status_code, rr.text)

    trace = requests.get(f"{API}/api/trace/{batch_id}").json()
    for ev in trace["events"]:
        print(ev["actor_role"], ev["payload"]["action"], ev["ledger_ref"][:18])
    print("verify:", requests.get(f"{API}/api/trace/{batch_id}/verify").json())

if __name__ == "__main__":
    main()
