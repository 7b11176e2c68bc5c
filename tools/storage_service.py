"""
Storage Service

JSON-file persistence for users, generated reports, admin references and
daily generation counters. One file, read and rewritten under a lock on
every change; the data set is small (a class worth of students).
"""

import json
import sys
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tools.lab_manual import PHYSICS_LAB_MANUAL_CONTEXT


DEFAULT_DAILY_LIMIT = 3
DB_FILENAME = "lab_reports_db.json"


def is_admin_email(email: str) -> bool:
    return "admin" in email


class StorageService:
    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / DB_FILENAME
        self._lock = threading.Lock()

    # Raw database access

    def _empty(self) -> Dict[str, Any]:
        return {"users": [], "reports": {}, "references": [], "daily_counts": {}}

    def _load(self) -> Dict[str, Any]:
        if not self.db_path.exists():
            return self._empty()
        try:
            with open(self.db_path, "r", encoding="utf-8") as f:
                db = json.load(f)
            if not isinstance(db, dict):
                raise ValueError(f"expected an object, found {type(db).__name__}")
        except ValueError as e:
            # Keep the unreadable file for recovery; the next save starts a new one
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            backup = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
            self.db_path.replace(backup)
            print(f"[StorageService] Database file is corrupt ({e}), moved to {backup.name}",
                  file=sys.stderr, flush=True)
            return self._empty()
        for key, value in self._empty().items():
            db.setdefault(key, value)
        return db

    def _save(self, db: Dict[str, Any]) -> None:
        tmp_path = self.db_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(db, f, indent=2, ensure_ascii=False)
        tmp_path.replace(self.db_path)

    @staticmethod
    def _find_user(db: Dict[str, Any], email: str) -> Optional[Dict[str, Any]]:
        return next((u for u in db["users"] if u["email"] == email), None)

    # Users

    def get_user(self, email: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._find_user(self._load(), email)

    def register_user(self, email: str) -> Dict[str, Any]:
        """Return the user for `email`, creating it on first sign-in."""
        with self._lock:
            db = self._load()
            user = self._find_user(db, email)
            if user is None:
                user = {
                    "email": email,
                    "role": "admin" if is_admin_email(email) else "student",
                    "registeredAt": datetime.now().isoformat(),
                    "isRevoked": False,
                    "reportsGenerated": 0,
                    "customLimit": DEFAULT_DAILY_LIMIT,
                }
                db["users"].append(user)
                self._save(db)
                print(f"[StorageService] Registered {email} as {user['role']}", file=sys.stderr)
            return user

    def get_all_users(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load()["users"]

    def revoke_user(self, email: str) -> Optional[Dict[str, Any]]:
        """Toggle the revoked flag. Returns the updated user, or None if unknown."""
        with self._lock:
            db = self._load()
            user = self._find_user(db, email)
            if user is not None:
                user["isRevoked"] = not user["isRevoked"]
                self._save(db)
            return user

    def update_user_limit(self, email: str, limit: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            db = self._load()
            user = self._find_user(db, email)
            if user is not None:
                user["customLimit"] = int(limit)
                self._save(db)
            return user

    # Reports

    def save_report(self, email: str, experiment_code: str, content: str) -> Dict[str, Any]:
        """Store a generated report, newest first, and bump the user's counter."""
        report = {
            "id": uuid.uuid4().hex,
            "experimentCode": experiment_code,
            "date": datetime.now().isoformat(),
            "content": content,
        }
        with self._lock:
            db = self._load()
            db["reports"].setdefault(email, []).insert(0, report)
            user = self._find_user(db, email)
            if user is not None:
                user["reportsGenerated"] += 1
            self._save(db)
        return report

    def get_reports(self, email: str) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load()["reports"].get(email, [])

    def get_report(self, email: str, report_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.get_reports(email) if r["id"] == report_id), None)

    # Daily limits

    def _limit_for(self, db: Dict[str, Any], email: str) -> int:
        user = self._find_user(db, email)
        if user is None or user.get("customLimit") is None:
            return DEFAULT_DAILY_LIMIT
        return int(user["customLimit"])

    def get_daily_count(self, email: str, day: Optional[date] = None) -> int:
        day = (day or date.today()).isoformat()
        with self._lock:
            return self._load()["daily_counts"].get(email, {}).get(day, 0)

    def check_daily_limit(self, email: str) -> bool:
        """True while the user may still generate today. Admins are never limited."""
        if is_admin_email(email):
            return True
        with self._lock:
            db = self._load()
            count = db["daily_counts"].get(email, {}).get(date.today().isoformat(), 0)
            return count < self._limit_for(db, email)

    def increment_daily_limit(self, email: str) -> int:
        today = date.today().isoformat()
        with self._lock:
            db = self._load()
            counts = db["daily_counts"].setdefault(email, {})
            counts[today] = counts.get(today, 0) + 1
            self._save(db)
            return counts[today]

    def usage(self, email: str) -> Dict[str, Any]:
        with self._lock:
            db = self._load()
            count = db["daily_counts"].get(email, {}).get(date.today().isoformat(), 0)
            if is_admin_email(email):
                return {"dailyCount": count, "limit": None, "remaining": None}
            limit = self._limit_for(db, email)
            return {"dailyCount": count, "limit": limit, "remaining": max(0, limit - count)}

    # Admin references

    def get_references(self) -> List[str]:
        with self._lock:
            return self._load()["references"]

    def add_reference(self, text: str) -> List[str]:
        with self._lock:
            db = self._load()
            db["references"].append(text)
            self._save(db)
            return db["references"]

    def remove_reference(self, index: int) -> List[str]:
        """
        Raises:
            IndexError: no reference at `index`
        """
        with self._lock:
            db = self._load()
            if not 0 <= index < len(db["references"]):
                raise IndexError(f"No reference at index {index}")
            db["references"].pop(index)
            self._save(db)
            return db["references"]

    def get_full_context(self) -> str:
        """Manual context plus admin references, as sent to the generator."""
        custom = "\n\n".join(self.get_references())
        return f"{PHYSICS_LAB_MANUAL_CONTEXT}\n\nADDITIONAL ADMIN REFERENCES:\n{custom}"
