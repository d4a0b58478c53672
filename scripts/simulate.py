"""
Rush-Hour Simulation Script

Registers a few waiters in one branch, fires a burst of concurrent orders
at the running API and prints how the orders were spread across staff.
Usage: python scripts/simulate.py --orders 60 --waiters 4

Version: 1.0.0
"""

import asyncio
import random
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any, Optional

import httpx

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50

WAITER_NAMES = ["Asha", "Ravi", "Meera", "Kiran", "Dev", "Nisha", "Arjun", "Priya"]
MENU_ITEMS = [
    {"name": "Masala Dosa", "unit_price": 4.50},
    {"name": "Paneer Tikka", "unit_price": 7.25},
    {"name": "Veg Biryani", "unit_price": 8.00},
    {"name": "Butter Naan", "unit_price": 1.75},
    {"name": "Filter Coffee", "unit_price": 1.50},
    {"name": "Gulab Jamun", "unit_price": 2.25},
]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for _ in range(random.randint(1, 4)):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return items


# =============================================================================
# SETUP
# =============================================================================

async def register_waiters(
    client: httpx.AsyncClient,
    hotel_id: str,
    branch_id: str,
    count: int,
    capacity: int,
) -> list[dict[str, Any]]:
    """Create ``count`` waiters in the branch and reset its rotation."""
    waiters = []
    for i in range(count):
        response = await client.post(
            f"{API_BASE_URL}/api/staff",
            json={
                "name": f"{WAITER_NAMES[i % len(WAITER_NAMES)]} {i + 1}",
                "hotel_id": hotel_id,
                "branch_id": branch_id,
                "manager_id": f"{branch_id}-manager",
                "max_orders_capacity": capacity,
            },
        )
        response.raise_for_status()
        waiters.append(response.json())

    await client.post(
        f"{API_BASE_URL}/api/assignment/round-robin/reset",
        json={"hotel_id": hotel_id, "branch_id": branch_id},
    )
    return waiters


# =============================================================================
# ORDER BURST
# =============================================================================

async def send_order(
    client: httpx.AsyncClient,
    order_num: int,
    hotel_id: str,
    branch_id: str,
) -> dict[str, Any]:
    """Place one order and report who got it."""
    payload = {
        "hotel_id": hotel_id,
        "branch_id": branch_id,
        "table_number": f"T{random.randint(1, 30)}",
        "items": generate_random_items(),
    }
    start_time = time.time()

    try:
        response = await client.post(f"{API_BASE_URL}/api/orders", json=payload, timeout=30.0)
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            data = response.json()
            assignment: Optional[dict] = data.get("assignment")
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["order"]["id"],
                "staff_id": assignment["staff_id"] if assignment else None,
                "error": data.get("assignment_error"),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    num_waiters: int = 4,
    capacity: int = 20,
    hotel_id: str = "sim-hotel",
    branch_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Fire ``num_orders`` concurrent orders at a freshly staffed branch.

    With enough total capacity every waiter should end up within one
    order of the others.
    """
    branch_id = branch_id or f"sim-{datetime.now().strftime('%H%M%S')}"

    print("=" * 70)
    print("RUSH-HOUR SIMULATION")
    print("=" * 70)
    print(f"Orders: {num_orders}   Waiters: {num_waiters} x capacity {capacity}")
    print(f"Target: {API_BASE_URL}   Branch: {hotel_id}/{branch_id}")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        waiters = await register_waiters(client, hotel_id, branch_id, num_waiters, capacity)
        names = {w["id"]: w["name"] for w in waiters}

        start_time = time.time()
        tasks = [send_order(client, i + 1, hotel_id, branch_id) for i in range(num_orders)]
        results = await asyncio.gather(*tasks)
        total_time = round(time.time() - start_time, 2)

        stats = (await client.get(
            f"{API_BASE_URL}/api/assignment/stats",
            params={"hotel_id": hotel_id, "branch_id": branch_id},
        )).json()

    placed = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    assigned = [r for r in placed if r["staff_id"] is not None]
    unassigned = [r for r in placed if r["staff_id"] is None]
    distribution = Counter(r["staff_id"] for r in assigned)

    print(f"\nPlaced: {len(placed)}/{num_orders}   Assigned: {len(assigned)}   "
          f"Unassigned: {len(unassigned)}   Failed: {len(failed)}")
    print(f"Total Time: {total_time}s")

    print("\nDistribution:")
    for staff_id, name in names.items():
        print(f"   {name:<12} #{staff_id:<5} {distribution.get(staff_id, 0):>4} orders")

    if distribution:
        spread = max(distribution.values()) - min(distribution.get(s, 0) for s in names)
        print(f"\nSpread (max - min): {spread}")

    print(f"Utilization: {stats['staff']['utilization']}%   Load: {stats['current_load']}/{stats['max_capacity']}")

    if failed:
        print("\nFailed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "assigned": len(assigned),
        "unassigned": len(unassigned),
        "failed": len(failed),
        "distribution": dict(distribution),
        "total_time": total_time,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rush-Hour Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--waiters", type=int, default=4, help="Number of waiters")
    parser.add_argument("--capacity", type=int, default=20, help="Capacity per waiter")
    parser.add_argument("--hotel", default="sim-hotel", help="Hotel id")
    parser.add_argument("--branch", default=None, help="Branch id (fresh one by default)")
    args = parser.parse_args()

    asyncio.run(run_simulation(
        num_orders=args.orders,
        num_waiters=args.waiters,
        capacity=args.capacity,
        hotel_id=args.hotel,
        branch_id=args.branch,
    ))
