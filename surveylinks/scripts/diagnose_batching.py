"""Run the small / medium / large generation scenarios against a live server.

Creates a throwaway project with two vendors, posts each scenario to
/links/generate and compares what was requested, what the response reports and
what the list endpoint actually returns.

    python -m surveylinks.scripts.diagnose_batching --base-url http://localhost:8000
"""

from __future__ import annotations

import argparse
import os
import time
from collections import Counter

import httpx

SCENARIOS = [
    ("small", {"testCount": 2, "liveCount": 2}, False),
    ("medium", {"testCount": 10, "liveCount": 40}, True),
    ("large", {"testCount": 10, "liveCount": 500}, True),
]


def _post(client: httpx.Client, path: str, body: dict) -> dict:
    resp = client.post(path, json=body)
    data = resp.json()
    if resp.status_code >= 400 and not isinstance(data.get("links"), list):
        raise RuntimeError(f"{path} -> {resp.status_code}: {data.get('message')}")
    return data


def setup_project(client: httpx.Client) -> tuple[str, list[str]]:
    project = _post(client, "/projects", {"name": f"batch-diagnosis-{int(time.time())}"})["project"]
    vendors = []
    for code in ("DGA", "DGB"):
        v = _post(client, "/vendors", {"projectId": project["id"], "name": f"Vendor {code}", "code": code})
        vendors.append(v["vendor"]["id"])
    print(f"[diagnose] project {project['id']} vendors {vendors}")
    return project["id"], vendors


def run_scenario(client: httpx.Client, project_id: str, vendors: list[str], name: str, counts: dict, per_vendor: bool) -> bool:
    n_vendors = len(vendors) if per_vendor else 1
    expected = {"TEST": counts["testCount"] * n_vendors, "LIVE": counts["liveCount"] * n_vendors}
    expected_total = sum(expected.values())

    before = client.get("/links", params={"projectId": project_id}).json()["count"]
    body = {"projectId": project_id, "originalUrl": "https://example.com/survey?pid={{PANELIST IDENTIFIER}}", **counts}
    if per_vendor:
        body.update(vendorIds=vendors, generatePerVendor=True)

    start = time.perf_counter()
    data = _post(client, "/links/generate", body)
    duration = time.perf_counter() - start

    links = data.get("links") or []
    by_type = Counter(ln["linkType"] for ln in links)
    by_vendor = Counter(ln.get("vendorId") or "-" for ln in links)
    after = client.get("/links", params={"projectId": project_id}).json()["count"]

    print(f"\n=== {name.upper()} BATCH ({expected_total} links) ===")
    print(f"  reported count: {data.get('count')}  links returned: {len(links)}  stored: {after - before}")
    print(f"  duration: {duration:.2f}s ({(len(links) / duration if duration else 0):.1f} links/sec)")
    for t in ("TEST", "LIVE"):
        print(f"  {t}: {by_type.get(t, 0)}/{expected[t]}")
    if per_vendor:
        for v in vendors:
            print(f"  vendor {v}: {by_vendor.get(v, 0)}/{expected_total // len(vendors)}")
    if data.get("failed"):
        kinds = Counter(f["kind"] for f in data.get("failures") or [])
        print(f"  failed: {data['failed']} {dict(kinds)}" + ("  (timed out)" if data.get("timedOut") else ""))

    consistent = data.get("count") == len(links) == after - before
    complete = len(links) == expected_total
    print(f"  {'OK' if consistent and complete else 'MISMATCH'}")
    return consistent and complete


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--base-url", default=os.environ.get("SURVEYLINKS_URL", "http://localhost:8000"))
    parser.add_argument("--only", choices=[s[0] for s in SCENARIOS], action="append")
    args = parser.parse_args()

    with httpx.Client(base_url=args.base_url, timeout=httpx.Timeout(600.0, connect=5.0)) as client:
        try:
            client.get("/health").raise_for_status()
        except httpx.HTTPError as e:
            print(f"[diagnose] server not reachable at {args.base_url}: {e}")
            return 2
        project_id, vendors = setup_project(client)
        results = [
            run_scenario(client, project_id, vendors, name, counts, per_vendor)
            for name, counts, per_vendor in SCENARIOS
            if not args.only or name in args.only
        ]
    return 0 if all(results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
