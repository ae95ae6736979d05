"""Клиент API SecureTodo для Streamlit-интерфейса.

Сессия (пользователь + токен) передаётся в клиент явно, а не берётся из
глобального состояния: так ветки авторизации проверяются без Streamlit.
Любой ответ 401 очищает сессию в одном месте — ``ApiClient._handle_response``.
"""
import json
from datetime import date
from typing import Any, Dict, List, MutableMapping, Optional

import requests

SESSION_KEY = "todo_app_session"

ROLE_USER = "user"
ROLE_ADMIN = "admin"
CATEGORIES = ["Non-Urgent", "Urgent"]


class ApiError(Exception):
    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class AuthError(ApiError):
    """Токен отсутствует, недействителен или устарел (HTTP 401)."""


class SessionCache:
    """Пара {user, token}, сохранённая в хранилище как JSON-строка.

    ``storage`` — любое изменяемое отображение: ``st.session_state`` в
    приложении или обычный ``dict`` в тестах.
    """

    def __init__(self, storage: MutableMapping, key: str = SESSION_KEY):
        self._storage = storage
        self._key = key
        self.user: Optional[Dict[str, Any]] = None
        self.token: Optional[str] = None
        self.restore()

    def restore(self) -> None:
        raw = self._storage.get(self._key)
        if not raw:
            return
        try:
            data = json.loads(raw)
            user, token = data["user"], data["token"]
        except (TypeError, ValueError, KeyError):
            user, token = None, None
        if not isinstance(user, dict) or not isinstance(token, str) or not user or not token:
            # повреждённая запись: выбрасываем и работаем без входа
            self.clear()
            return
        self.user, self.token = user, token

    def save(self, user: Dict[str, Any], token: str) -> None:
        self.user, self.token = user, token
        self._storage[self._key] = json.dumps({"user": user, "token": token})

    def clear(self) -> None:
        self.user, self.token = None, None
        self._storage.pop(self._key, None)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user)

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and self.user.get("role") == ROLE_ADMIN


def _error_detail(data, default: str) -> str:
    if isinstance(data, dict):
        detail = data.get("detail")
        if isinstance(detail, str):
            return detail
        if isinstance(detail, list):
            # ошибки валидации pydantic
            messages = [str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail]
            return "; ".join(messages) or default
    return default


def _to_json(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, date) else v) for k, v in fields.items()}


class ApiClient:
    def __init__(self, session: SessionCache, base_url: str, http=None, timeout: float = 10):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout

    # -----------------------------
    # Служебные методы
    # -----------------------------
    def _request(self, method: str, path: str, **kwargs):
        headers = {}
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        try:
            response = self.http.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise ApiError(f"Сервер недоступен: {exc}") from exc
        return self._handle_response(response)

    def _handle_response(self, response):
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code == 401:
            self.session.clear()
            raise AuthError(_error_detail(data, "Требуется вход"), 401)
        if not 200 <= response.status_code < 300:
            raise ApiError(_error_detail(data, "Ошибка запроса"), response.status_code)
        return data

    # -----------------------------
    # Аутентификация
    # -----------------------------
    def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        result = self._request(
            "POST", "/auth/register", json={"username": username, "email": email, "password": password}
        )
        self.session.save(result["user"], result["token"])
        return result

    def login(self, credential: str, password: str) -> Dict[str, Any]:
        result = self._request("POST", "/auth/login", json={"credential": credential, "password": password})
        self.session.save(result["user"], result["token"])
        return result

    def logout(self) -> None:
        self.session.clear()

    # -----------------------------
    # Задачи
    # -----------------------------
    def fetch_todos(self, all_users: bool = False) -> List[Dict[str, Any]]:
        return self._request("GET", "/todos/admin/all" if all_users else "/todos")

    def get_todo(self, task_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/todos/{task_id}")

    def create_todo(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/todos", json=_to_json(fields))

    def update_todo(self, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/todos/{task_id}", json=_to_json(updates))

    def toggle_todo(self, task_id: str, completed: bool) -> Dict[str, Any]:
        return self.update_todo(task_id, {"completed": completed})

    def delete_todo(self, task_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/todos/{task_id}")

    # -----------------------------
    # Администрирование
    # -----------------------------
    def fetch_users(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/admin/users")

    def update_user_role(self, user_id: str, role: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/admin/users/{user_id}/role", json={"role": role})
