import requests
from typing import Optional


class ClassifierClient:
    """Simple REST client for the training-age API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"X-API-Key": api_key} if api_key else {}

    def _get(self, path: str, **params):
        resp = requests.get(
            f"{self.base_url}{path}",
            params=params or None,
            headers=self.headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def _send(self, method: str, path: str, payload: Optional[dict] = None):
        resp = requests.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers=self.headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def health(self) -> dict:
        return self._get("/health")

    def save_profile(self, user_id: str, profile: dict) -> None:
        self._send("PUT", f"/users/{user_id}/profile", profile)

    def tier(self, user_id: str) -> str:
        return self._get(f"/users/{user_id}/tier")["tier"]

    def classification(self, user_id: str) -> dict:
        return self._get(f"/users/{user_id}/classification")

    def progressive_classification(self, user_id: str) -> dict:
        return self._get(f"/users/{user_id}/classification/progressive")

    def record_initial(self, user_id: str) -> dict:
        return self._send("POST", f"/users/{user_id}/classification/initial")

    def history(self, user_id: str, limit: int = 10) -> list:
        return self._get(f"/users/{user_id}/history", limit=limit)

    def blueprint(self, user_id: str) -> str:
        return self._get(f"/users/{user_id}/blueprint")["blueprint"]

    def log_workout(
        self, user_id: str, exercises: list, date: Optional[str] = None
    ) -> dict:
        payload = {"exercises": exercises}
        if date:
            payload["date"] = date
        return self._send("POST", f"/users/{user_id}/workouts", payload)

    def audit(self, user_id: str) -> dict:
        return self._send("POST", f"/users/{user_id}/audit")

    def audits(self, user_id: str, limit: int = 10) -> list:
        return self._get(f"/users/{user_id}/audits", limit=limit)

    def performance(self, user_id: str, weeks: int = 2) -> dict:
        return self._get(f"/users/{user_id}/performance", weeks=weeks)
