"""
Pytest test suite for the Course Checkout backend.

Test categories:
- Unit tests: service layer against in-memory SQLite, outbound HTTP mocked
- API tests: full FastAPI app through httpx ASGITransport
- Edge case tests: idempotency, amount mismatch, races, expiry
"""
