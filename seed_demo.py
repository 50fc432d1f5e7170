# seed_demo.py
import os

import requests

BASE_URL = os.getenv("CIRCULATION_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "genre": "Software",
        "publication_year": 2008,
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "genre": "Software",
        "publication_year": 1999,
    },
    {
        "isbn": "978-0131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
        "genre": "Programming Languages",
        "publication_year": 1988,
    },
    {
        "isbn": "978-0134685991",
        "title": "Effective Java",
        "author": "Joshua Bloch",
        "genre": "Programming Languages",
        "publication_year": 2018,
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "genre": "Computer Science",
        "publication_year": 2009,
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "genre": "Computer Science",
        "publication_year": 2017,
    },
]

MEMBERS = [
    {"name": "Alice Reader", "email": "alice@example.com", "phone": "555-0100", "max_books": 5},
    {"name": "Bob Borrower", "email": "bob@example.com", "phone": "555-0101"},
    {"name": "Carol Casual", "email": "carol@example.com", "max_books": 1},
]


def check_service(base_url=BASE_URL):
    """Hit /api/health and return True/False."""
    health_url = f"{base_url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def _post(base_url, path, payload, api_key):
    return requests.post(
        f"{base_url.rstrip('/')}{path}",
        json=payload,
        headers={"X-API-Key": api_key},
        timeout=5,
    )


def seed_books(base_url=BASE_URL, api_key=SERVICE_API_KEY):
    print("\n== Seeding books ==")
    copy_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["copies"] = 1 + (i % 3)  # 1-3 copies

        resp = _post(base_url, "/api/books", payload, api_key)
        print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
        if not resp.ok:
            print(f"      Body: {resp.text.strip()}")
            continue
        copy_ids.extend(c["id"] for c in resp.json()["book"]["copies"])
    return copy_ids


def seed_members(base_url=BASE_URL, api_key=SERVICE_API_KEY):
    print("\n== Seeding members ==")
    member_ids = []
    for member in MEMBERS:
        resp = _post(base_url, "/api/members", member, api_key)
        print(f"  {member['email']}: {resp.status_code}")
        if resp.ok:
            member_ids.append(resp.json()["member"]["id"])
    return member_ids


def seed_loans(member_ids, copy_ids, base_url=BASE_URL, api_key=SERVICE_API_KEY):
    """Check out one copy per member, round-robin over the seeded copies."""
    print("\n== Seeding loans ==")
    transaction_ids = []
    for member_id, copy_id in zip(member_ids, copy_ids):
        resp = _post(
            base_url,
            "/api/checkout",
            {"member_id": member_id, "book_copy_id": copy_id, "notes": "seeded"},
            api_key,
        )
        print(f"  member {member_id} <- copy {copy_id}: {resp.status_code}")
        if resp.ok:
            transaction_ids.append(resp.json()["transaction"]["id"])
    return transaction_ids


def main():
    print("Checking circulation service...")
    if not check_service():
        print("\nService is not reachable. Make sure it is running on 5000.")
        return

    copy_ids = seed_books()
    member_ids = seed_members()
    seed_loans(member_ids, copy_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/analytics/dashboard")
    print(f"  {BASE_URL}/api/inventory")


if __name__ == "__main__":
    main()
