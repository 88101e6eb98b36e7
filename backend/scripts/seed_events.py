"""Generate realistic fake traffic for development and demos.

Usage:
    python -m scripts.seed_events --project-id demo [--url http://localhost:8000]
    python -m scripts.seed_events --project-id demo --sessions 300
    python -m scripts.seed_events --project-id demo --backfill --days 7

Live mode posts to the public ingest endpoint, so events are stamped "now".
Backfill mode writes historical events straight into the event store; a
running server picks them up through its outbox sweep.
"""

import argparse
import asyncio
import random
import sys
from datetime import datetime, timedelta, timezone

import httpx

PAGES = [
    "https://example.com/",
    "https://example.com/pricing",
    "https://example.com/features",
    "https://example.com/about",
    "https://example.com/blog",
    "https://example.com/blog/getting-started",
    "https://example.com/docs",
    "https://example.com/docs/api?ref=nav",
    "https://example.com/signup",
]

EVENTS = [
    ("pageview", 80),
    ("signup_click", 8),
    ("form_submit", 7),
    ("purchase", 5),
]

REFERRERS = [
    "https://www.google.com/",
    "https://twitter.com/some/post",
    "https://github.com/",
    "https://news.ycombinator.com/",
    "https://mail.example.org/",
    "",
    "",
    "",
]

USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) Chrome/120.0.0.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0.0.0",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Safari/605.1.15",
    "Mozilla/5.0 (Linux; Android 14) Chrome/120.0.0.0 Mobile",
    "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0",
]

COUNTRIES = ["US", "DE", "GB", "FR", "IN", "BR", ""]


def generate_sessions(project_id: str, sessions: int) -> list[tuple[dict, str, str]]:
    """Build (payload, user agent, country) triples, several pageviews per session."""
    names = [e[0] for e in EVENTS]
    weights = [e[1] for e in EVENTS]
    traffic = []
    for i in range(sessions):
        session_id = f"sess_{i:06d}_{random.randint(0, 99999):05d}"
        user_agent = random.choice(USER_AGENTS)
        country = random.choice(COUNTRIES)
        referrer = random.choice(REFERRERS)
        # Roughly 40% of sessions bounce
        depth = 1 if random.random() < 0.4 else random.randint(2, 6)
        for step in range(depth):
            payload = {
                "projectId": project_id,
                "sessionId": session_id,
                "url": random.choice(PAGES),
                "eventName": random.choices(names, weights=weights, k=1)[0] if step else "pageview",
            }
            if step == 0 and referrer:
                payload["referrer"] = referrer
            traffic.append((payload, user_agent, country))
    return traffic


def send_live(url: str, traffic: list[tuple[dict, str, str]]) -> int:
    sent = 0
    with httpx.Client(timeout=30) as client:
        for payload, user_agent, country in traffic:
            headers = {"User-Agent": user_agent}
            if country:
                headers["CF-IPCountry"] = country
            resp = client.post(f"{url}/api/v1/events", json=payload, headers=headers)
            if resp.status_code != 202:
                print(f"  Error: {resp.status_code} - {resp.text}", file=sys.stderr)
                sys.exit(1)
            sent += 1
            if sent % 100 == 0:
                print(f"  Sent {sent}/{len(traffic)} events")
    return sent


async def backfill(traffic: list[tuple[dict, str, str]], days: int) -> int:
    from pulse.db.session import AsyncSessionLocal, engine
    from pulse.schemas.event import EventIn
    from pulse.services.event_service import EventService
    from pulse.services.event_store import EventStore

    store = EventStore(AsyncSessionLocal)
    now = datetime.now(timezone.utc)
    start = now - timedelta(days=days)
    # Keep each session's pageviews a few minutes apart
    session_starts: dict[str, datetime] = {}
    rows = []
    for payload, user_agent, country in traffic:
        sid = payload["sessionId"]
        if sid not in session_starts:
            session_starts[sid] = start + timedelta(seconds=random.randint(0, days * 86400))
        else:
            session_starts[sid] += timedelta(seconds=random.randint(20, 300))
        event = EventService.build(EventIn(**payload), country=country, header_user_agent=user_agent)
        rows.append((session_starts[sid], event))
    rows.sort(key=lambda r: r[0])
    for ts, event in rows:
        await store.append(event, timestamp=ts)
    await engine.dispose()
    return len(rows)


def main():
    parser = argparse.ArgumentParser(description="Seed analytics events")
    parser.add_argument("--project-id", required=True, help="Project identifier")
    parser.add_argument("--url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--sessions", type=int, default=200, help="Number of sessions")
    parser.add_argument("--backfill", action="store_true", help="Write history directly to the store")
    parser.add_argument("--days", type=int, default=7, help="Days of history (backfill only)")
    args = parser.parse_args()

    traffic = generate_sessions(args.project_id, args.sessions)
    print(f"Generated {len(traffic)} events across {args.sessions} sessions")

    if args.backfill:
        total = asyncio.run(backfill(traffic, args.days))
    else:
        print(f"Sending to {args.url}...")
        total = send_live(args.url, traffic)

    print(f"Done! Seeded {total} events.")


if __name__ == "__main__":
    main()
