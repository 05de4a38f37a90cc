#!/usr/bin/env python3
"""
GatePass load client (async)

Simulates buyers and gate staff against the server:
  1) POST /api/paystack/init      (email, amount, reference) -> /mockpay/{ref}
  2) POST /mockpay/{ref}/emit     (t=succeeded), 303 not followed
  3) POST /api/verify-payment     -> serials, one per seat
  4) for every serial, fire --scans concurrent POST /api/checkin from
     different "gates" and count the answers

Every serial must be admitted exactly once: one 200, the rest 409. Anything
else is reported as a violation.

Usage:
  python -m gatepass.load_client --base http://localhost:8000 \
                                 --total 200 --concurrency 50 --scans 4

Notes:
- This targets the MockPay flow (PAYMENT_GATEWAY=mock).
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
"""

import asyncio
import random
import string
import time
import argparse
import uuid
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

BUNDLES = [
    {"id": 1, "name": "General Admission", "price": 7000, "seats": 1},
    {"id": 2, "name": "Couple Pass", "price": 13000, "seats": 2},
    {"id": 3, "name": "Squad of 4", "price": 25000, "seats": 4},
]


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # ISSUED/ERROR
    serials: List[str] = field(default_factory=list)
    t_purchase: float = 0.0
    t_checkin: float = 0.0
    admitted: int = 0
    rejected: int = 0
    violations: int = 0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        issued = [r for r in self.results if r.outcome == "ISSUED"]
        lat = [r.t_purchase for r in issued if r.t_purchase > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "issued": len(issued),
            "serials": sum(len(r.serials) for r in issued),
            "admitted": sum(r.admitted for r in issued),
            "rejected": sum(r.rejected for r in issued),
            "violations": sum(r.violations for r in issued),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Purchases: {int(s['total'])}   ISSUED: {int(s['issued'])}   "
            f"ERROR: {int(s['error'])}   Serials: {int(s['serials'])}"
        )
        print(
            f"Check-ins: admitted {int(s['admitted'])}   "
            f"rejected {int(s['rejected'])}   "
            f"VIOLATIONS {int(s['violations'])}"
        )
        print(
            f"Latency (purchase -> serials): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} purchases/s"
        )
        errors = [r.err for r in self.results if r.err][:5]
        for e in errors:
            print(f"  error: {e}")


async def one_purchase(
    client: httpx.AsyncClient,
    base: str,
    bundle: dict,
    scans: int,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    email = _rand_email()
    reference = uuid.uuid4().hex

    # 1) initialize + 2) pay on the mock screen + 3) reconcile
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/paystack/init",
            json={
                "email": email,
                "amount": bundle["price"],
                "reference": reference,
                "callbackUrl": f"{base}/",
            },
            timeout=30.0,
        )
        resp.raise_for_status()

        resp = await client.post(
            f"{base}/mockpay/{reference}/emit",
            data={"t": "succeeded"},
            follow_redirects=False,
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r

        resp = await client.post(
            f"{base}/api/verify-payment",
            json={
                "transactionReference": f"tx-{reference}",
                "paymentReference": reference,
                "amountPaid": bundle["price"],
                "customerName": "Load Tester",
                "customerEmail": email,
                "ticket": bundle,
            },
            timeout=30.0,
        )
        resp.raise_for_status()
        r.serials = resp.json()["serials"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"purchase: {e}"
        return r
    r.t_purchase = time.perf_counter() - t0

    # 4) concurrent scans of every serial
    async def scan(serial: str, gate: int) -> int:
        g = await client.post(
            f"{base}/api/checkin",
            json={"serial": serial, "gate": f"gate-{gate}",
                  "usedBy": f"staff-{gate}"},
            timeout=30.0,
        )
        return g.status_code

    t1 = time.perf_counter()
    try:
        for serial in r.serials:
            codes = await asyncio.gather(
                *(scan(serial, g) for g in range(scans))
            )
            ok = codes.count(200)
            r.admitted += ok
            r.rejected += codes.count(409)
            if ok != 1 or codes.count(409) != scans - 1:
                r.violations += 1
                r.err = f"serial {serial}: {sorted(codes)}"
    except httpx.HTTPError as e:
        r.err = f"checkin: {e}"
        return r
    r.t_checkin = time.perf_counter() - t1

    r.ok = r.violations == 0
    r.outcome = "ISSUED"
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    scans: int,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "GatePassLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                res = await one_purchase(
                    client, base, random.choice(BUNDLES), scans
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="GatePass load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total purchases to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--scans", type=int, default=3,
                    help="Concurrent check-ins fired per serial")
    args = ap.parse_args()

    if args.scans < 1:
        ap.error("--scans must be >= 1")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        total=args.total,
        concurrency=args.concurrency,
        scans=args.scans,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
