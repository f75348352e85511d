"""
Chaos Simulation Script

Fires concurrent checkouts, then races staff and customer transitions on
every order to check that each one ends in exactly one consistent state.
Run from project root against a running server: python scripts/simulate.py

Author: Khalil_Bannouri
Version: 2.0.0
"""

import argparse
import asyncio
import random
import sys
import time
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50
RESTAURANT_ID = "rest-yangon-01"
STAFF_HEADERS = {"x-user-id": "staff-01", "x-user-role": "restaurant_staff"}

MENU_ITEMS = [
    {"item_id": "m1", "name": "Mohinga", "unit_price": "3500.00"},
    {"item_id": "m2", "name": "Shan Noodles", "unit_price": "4500.00"},
    {"item_id": "m3", "name": "Tea Leaf Salad", "unit_price": "5000.00"},
    {"item_id": "m4", "name": "Coconut Noodles", "unit_price": "5500.00"},
    {"item_id": "m5", "name": "Faluda", "unit_price": "3000.00"},
    {"item_id": "m6", "name": "Lime Juice", "unit_price": "1500.00"},
]
PAYMENT_METHODS = ["kbzpay", "wavepay", "mpu", "cash", "card"]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for item in random.sample(MENU_ITEMS, random.randint(1, 4)):
        items.append({**item, "quantity": random.randint(1, 3)})
    return items


def customer_headers(customer_id: str) -> dict[str, str]:
    return {"x-user-id": customer_id, "x-user-role": "customer"}


# =============================================================================
# CHECKOUT
# =============================================================================

async def send_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    """Check out one random cart."""
    customer_id = f"cust-{random.randint(1, 10):02d}"
    payload = {
        "restaurant_id": RESTAURANT_ID,
        "order_type": random.choice(["dine_in", "takeaway"]),
        "items": generate_random_items(),
        "payment_method": random.choice(PAYMENT_METHODS),
    }
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=payload,
            headers=customer_headers(customer_id),
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        return {"order_num": order_num, "success": False, "error": str(e)[:100]}

    elapsed = round(time.time() - start_time, 3)
    if response.status_code != 201:
        return {"order_num": order_num, "success": False, "error": response.text[:100], "time": elapsed}

    data = response.json()
    return {
        "order_num": order_num,
        "success": True,
        "order_id": data["id"],
        "customer_id": customer_id,
        "qr_token": data["qr_token"],
        "time": elapsed,
    }


# =============================================================================
# TRANSITION RACES
# =============================================================================

async def transition(client: httpx.AsyncClient, order_id: str, status: str, headers: dict) -> int:
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/{order_id}/transition",
            json={"status": status},
            headers=headers,
            timeout=30.0,
        )
    except httpx.HTTPError:
        return 0
    return response.status_code


async def race_order(client: httpx.AsyncClient, order: dict[str, Any]) -> dict[str, Any]:
    """Staff start preparing twice while the customer cancels, then staff scan twice."""
    order_id = order["order_id"]
    codes = await asyncio.gather(
        transition(client, order_id, "preparing", STAFF_HEADERS),
        transition(client, order_id, "preparing", STAFF_HEADERS),
        transition(client, order_id, "cancelled", customer_headers(order["customer_id"])),
    )

    await transition(client, order_id, "ready", STAFF_HEADERS)
    scans = await asyncio.gather(*[
        client.post(
            f"{API_BASE_URL}/api/scan/complete",
            json={"payload": order["qr_token"]},
            headers=STAFF_HEADERS,
            timeout=30.0,
        )
        for _ in range(2)
    ])

    final = (await client.get(f"{API_BASE_URL}/api/orders/{order_id}")).json()
    return {
        "order_id": order_id,
        "race_codes": codes,
        "scan_codes": [r.status_code for r in scans],
        "final_status": final["status"],
    }


async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_orders: Number of orders to simulate
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONCURRENT TRANSITIONS")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        created = await asyncio.gather(*[send_order(client, i + 1) for i in range(num_orders)])
        successful = [r for r in created if r["success"]]
        races = await asyncio.gather(*[race_order(client, order) for order in successful])

    total_time = round(time.time() - start_time, 2)
    failed = [r for r in created if not r["success"]]
    finals = Counter(r["final_status"] for r in races)
    inconsistent = [r for r in races if r["final_status"] not in ("completed", "cancelled")]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Created: {len(successful)}/{num_orders}")
    print(f"❌ Failed: {len(failed)}/{num_orders}")
    print(f"⏱️  Total Time: {total_time}s")
    print(f"\n🏁 Final states: {dict(finals)}")

    if inconsistent:
        print(f"\n⚠️  Orders not in a terminal state (first 5):")
        for r in inconsistent[:5]:
            print(f"   {r['order_id']}: {r['final_status']} races={r['race_codes']} scans={r['scan_codes']}")

    if failed:
        print(f"\n⚠️  Failed checkouts (first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "final_states": dict(finals),
        "inconsistent": len(inconsistent),
        "total_time": total_time,
    }


async def preflight() -> bool:
    """Check the server is up before the simulation."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Server unreachable: {e}")
            return False
    data = response.json()
    print(f"   ✅ Status: {data.get('status')} (store={data.get('store')}, channels={data.get('channels')})")
    return response.status_code == 200


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()
    API_BASE_URL = args.url

    if not asyncio.run(preflight()):
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.orders))
    sys.exit(1 if summary["inconsistent"] else 0)
