#!/usr/bin/env python3
"""
Seed script — creates a small dataset for exercising personalization.

Creates:
  • The base interest taxonomy
  • 30 posts from 6 creators, each classified on write
  • Taste graphs for 4 users (follows + engagements)
  • A ranked feed for every user

Run after the API is up:
  python scripts/seed_data.py --api-url http://localhost:8000
"""
import argparse
import json
import random
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


CREATORS = [
    ("maya_styles", True),
    ("leo_lens", True),
    ("june_bakes", False),
    ("ari_travels", True),
    ("sam_glow", False),
    ("ox", False),
]

SAMPLE_POSTS = [
    ("Street style from Tokyo this weekend", ["streetwear", "outfit"], "Street Looks"),
    ("Backstage at the spring fashion week shows", ["fashion week", "runway"], "Runway"),
    ("Golden hour over the valley, no filter", ["landscape", "nature"], "Landscapes"),
    ("Studio portrait session with soft light", ["portrait", "headshot"], "Portraits"),
    ("Lemon tart with a brown butter crust", ["dessert", "baking"], "Sweets"),
    ("Ten days island hopping, itinerary inside", ["travel", "vacation"], "Trips"),
    ("My five step evening skincare routine", ["skincare", "serum"], "Skincare"),
    ("Bold lipstick looks for the holidays", ["makeup", "lipstick"], "Makeup"),
    ("Brutalist concrete in the city centre", ["architecture", "urban"], "Buildings"),
    ("Weekly meal prep: grain bowls and salads", ["meal prep", "healthy"], "Healthy"),
]

USERS = {
    "user_fashion": {"follows": ["fashion", "fashion_streetwear"], "searches": ["fashion_shows"]},
    "user_photo": {"follows": ["photography"], "searches": ["photography_landscape"]},
    "user_food": {"follows": ["food_desserts"], "searches": ["food_healthy_eating"]},
    "user_new": {"follows": [], "searches": []},
}


@dataclass
class ApiClient:
    base_url: str

    def _send(self, method: str, path: str, data: dict | None = None) -> dict | list:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=10) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            print(f"  HTTP {e.code} on {method} {path}: {e.read().decode()}")
            return {}

    def post(self, path: str, data: dict | None = None) -> dict | list:
        return self._send("POST", path, data if data is not None else {})

    def put(self, path: str, data: dict) -> dict | list:
        return self._send("PUT", path, data)

    def get(self, path: str) -> dict | list:
        return self._send("GET", path)


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for _ in range(retries):
        try:
            result = client.get("/health")
            if isinstance(result, dict) and result.get("status") == "ok":
                print("  API is ready!\n")
                return
        except OSError:
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


def main(api_url: str) -> None:
    client = ApiClient(api_url)
    wait_for_api(client)
    now = datetime.now(timezone.utc)

    # ── Taxonomy ─────────────────────────────────────────────────────────
    print("Seeding taxonomy...")
    result = client.post("/interests/seed")
    print(f"  ✓ {result.get('created', 0)} interests created")

    # ── Posts ─────────────────────────────────────────────────────────────
    print("\nCreating posts...")
    posts: list[dict] = []
    for i in range(30):
        caption, tags, board = SAMPLE_POSTS[i % len(SAMPLE_POSTS)]
        username, has_photo = CREATORS[i % len(CREATORS)]
        views = random.randint(50, 2000)
        post = {
            "postId": str(uuid.uuid4()),
            "userId": username,
            "username": username,
            "profilePhotoUrl": f"https://cdn.example.com/{username}.jpg" if has_photo else None,
            "caption": caption,
            "tags": tags,
            "boardName": board,
            "createdAt": (now - timedelta(hours=random.randint(0, 96))).isoformat(),
            "viewCount": views,
            "likeCount": random.randint(0, views // 10),
            "commentCount": random.randint(0, 20),
            "saveCount": random.randint(0, 15),
            "shareCount": random.randint(0, 5),
        }
        stored = client.put(f"/posts/{post['postId']}", post)
        if stored:
            posts.append(stored)
    print(f"  ✓ {len(posts)} posts created and classified")

    # ── Taste graphs ──────────────────────────────────────────────────────
    print("\nBuilding taste graphs...")
    for user_id, profile in USERS.items():
        for interest_id in profile["follows"]:
            client.post(
                f"/taste-graph/{user_id}/engagements",
                {"interestId": interest_id, "source": "explicitFollow", "weight": 1.0},
            )
        for interest_id in profile["searches"]:
            client.post(
                f"/taste-graph/{user_id}/engagements",
                {"interestId": interest_id, "source": "inferredFromSearch", "weight": 0.6},
            )
        top = client.get(f"/taste-graph/{user_id}/top?count=3")
        names = ", ".join(t["affinity"]["interestId"] for t in top) if top else "(empty)"
        print(f"  ✓ {user_id}: {names}")

    # ── Rank ──────────────────────────────────────────────────────────────
    print("\nRanking feeds...")
    for user_id in USERS:
        ranked = client.post("/rank", {"userId": user_id, "posts": posts})
        top_ids = [p["primaryInterestId"] for p in ranked.get("posts", [])[:5]]
        print(f"  ✓ {user_id} (personalized={ranked.get('personalized')}): {top_ids}")

    # ── Print summary ─────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    print("# Classification analytics:")
    print(f"  curl -s '{api_url}/classifications/analytics' | python3 -m json.tool\n")
    print("# Trending interests (after recalculating stats):")
    print(f"  curl -s -X POST '{api_url}/interests/recalculate' > /dev/null")
    print(f"  curl -s '{api_url}/interests/trending' | python3 -m json.tool\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print("# Check Prometheus: http://localhost:9090")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the personalization service")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    args = parser.parse_args()
    main(args.api_url)
