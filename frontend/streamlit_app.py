import os
from datetime import date

import streamlit as st

from api_client import ApiClient, ApiError, AuthError, SessionCache, CATEGORIES, ROLE_ADMIN, ROLE_USER

API_URL = os.getenv("API_URL", "http://backend:8000")  # URL вашего FastAPI-приложения
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "10"))

# Инициализация session_state: текущая «страница» и редактируемая задача
if "menu" not in st.session_state:
    st.session_state.menu = "Login"  # Стартовая «страница»
if "edit_task_id" not in st.session_state:
    st.session_state.edit_task_id = None
if "confirm_delete_id" not in st.session_state:
    st.session_state.confirm_delete_id = None

# Сессия восстанавливается при каждом перезапуске скрипта
session = SessionCache(st.session_state)
api = ApiClient(session, API_URL, timeout=API_TIMEOUT)


# -----------------------------
# Обёртка над вызовами API
# -----------------------------
def call_api(action, success_message=None):
    """Выполняет запрос и показывает ошибку пользователю.

    При 401 клиент уже очистил сессию, остаётся перейти на страницу входа.
    """
    try:
        result = action()
    except AuthError as exc:
        st.session_state.menu = "Login"
        st.error("Сессия недействительна: " + exc.detail)
        return None
    except ApiError as exc:
        st.error(exc.detail)
        return None
    if success_message:
        st.success(success_message)
    return result


def go(menu, edit_task_id=None):
    st.session_state.menu = menu
    st.session_state.edit_task_id = edit_task_id


def delete_button(task_id, key, container=st):
    """Удаление в два шага: кнопка, затем подтверждение."""
    if st.session_state.confirm_delete_id == task_id:
        container.warning("Удалить задачу?")
        if container.button("Да, удалить", key=f"{key}_yes_{task_id}"):
            st.session_state.confirm_delete_id = None
            if call_api(lambda: api.delete_todo(task_id), "Задача удалена!"):
                st.rerun()
        if container.button("Отмена", key=f"{key}_no_{task_id}"):
            st.session_state.confirm_delete_id = None
            st.rerun()
    elif container.button("Удалить", key=f"{key}_{task_id}"):
        st.session_state.confirm_delete_id = task_id
        st.rerun()


def filter_todos(todos, status_filter="all", search="", category="all"):
    search = (search or "").lower()
    result = []
    for t in todos:
        if status_filter == "active" and t["completed"]:
            continue
        if status_filter == "completed" and not t["completed"]:
            continue
        if category != "all" and t["category"] != category:
            continue
        text = (t["title"] + " " + (t.get("description") or "")).lower()
        if search and search not in text:
            continue
        result.append(t)
    return result


# -----------------------------
# Боковое меню (кнопки)
# -----------------------------
st.sidebar.title("Меню")

if not session.is_authenticated:
    if st.sidebar.button("Логин"):
        go("Login")
    if st.sidebar.button("Регистрация"):
        go("Register")
else:
    st.sidebar.write(f"Вы вошли как **{session.user['username']}** ({session.user['role']})")
    if st.sidebar.button("Задачи"):
        go("Tasks")
    if st.sidebar.button("Создать задачу"):
        go("TaskForm")
    if session.is_admin and st.sidebar.button("Администрирование"):
        go("Admin")
    if st.sidebar.button("Выйти"):
        api.logout()
        go("Login")

# Страницы, требующие входа, без сессии недоступны
if not session.is_authenticated and st.session_state.menu not in ("Login", "Register"):
    go("Login")


# -----------------------------
# Основной контент
# -----------------------------
st.title("SecureTodo")

if st.session_state.menu == "Login":
    st.header("Вход")
    with st.form("login_form"):
        credential = st.text_input("Имя пользователя или email")
        password = st.text_input("Пароль", type="password")
        submitted = st.form_submit_button("Войти")
    if submitted:
        if call_api(lambda: api.login(credential, password), "Вход выполнен успешно!"):
            go("Tasks")
            st.rerun()

elif st.session_state.menu == "Register":
    st.header("Регистрация")
    with st.form("register_form"):
        username = st.text_input("Имя пользователя")
        email = st.text_input("Email")
        password = st.text_input("Пароль", type="password")
        submitted = st.form_submit_button("Зарегистрироваться")
    if submitted:
        if len(username.strip()) < 3:
            st.error("Имя пользователя должно быть не короче 3 символов")
        elif len(password) < 8:
            st.error("Пароль должен быть не короче 8 символов")
        elif call_api(lambda: api.register(username, email, password), "Регистрация прошла успешно!"):
            go("Tasks")
            st.rerun()

elif st.session_state.menu == "Tasks":
    st.header("Задачи")
    view_all = False
    if session.is_admin:
        view_all = st.radio("Показать", ["Мои", "Все пользователи"], horizontal=True) == "Все пользователи"

    col1, col2, col3 = st.columns(3)
    with col1:
        search = st.text_input("Поиск по тексту")
    with col2:
        status_filter = st.selectbox("Статус", ["all", "active", "completed"])
    with col3:
        category = st.selectbox("Категория", ["all"] + CATEGORIES)

    tasks = call_api(lambda: api.fetch_todos(all_users=view_all)) or []
    tasks = filter_todos(tasks, status_filter, search, category)
    if not tasks:
        st.info("Задачи не найдены.")
    for task in tasks:
        st.subheader(task["title"])
        if task.get("description"):
            st.write(task["description"])
        meta = f"Категория: {task['category']}"
        if task.get("due_date"):
            meta += f" · Срок: {task['due_date']}"
        if task.get("owner_name"):
            meta += f" · Автор: {task['owner_name']}"
        st.caption(meta)

        col_done, col_edit, col_del = st.columns(3)
        with col_done:
            done = st.checkbox("Выполнено", value=task["completed"], key=f"done_{task['id']}")
            if done != task["completed"]:
                if call_api(lambda: api.toggle_todo(task["id"], done)):
                    st.rerun()
        with col_edit:
            if st.button("Редактировать", key=f"edit_{task['id']}"):
                go("TaskForm", task["id"])
                st.rerun()
        with col_del:
            delete_button(task["id"], "delete")
        st.write("---")

elif st.session_state.menu == "TaskForm":
    edit_id = st.session_state.edit_task_id
    current = {}
    if edit_id:
        st.header("Редактировать задачу")
        current = call_api(lambda: api.get_todo(edit_id))
        if current is None:
            if st.session_state.menu == "TaskForm":
                go("Tasks")
            st.stop()
    else:
        st.header("Создать новую задачу")

    with st.form("task_form"):
        title = st.text_input("Заголовок", value=current.get("title", ""), max_chars=100)
        description = st.text_area("Описание", value=current.get("description") or "", max_chars=500)
        has_due = st.checkbox("Указать срок", value=bool(current.get("due_date")))
        due_value = date.fromisoformat(current["due_date"]) if current.get("due_date") else date.today()
        due_date = st.date_input("Срок", value=due_value)
        category_index = CATEGORIES.index(current["category"]) if current.get("category") in CATEGORIES else 0
        category = st.selectbox("Категория", CATEGORIES, index=category_index)
        submitted = st.form_submit_button("Сохранить" if edit_id else "Создать задачу")

    if submitted:
        if not title.strip():
            st.error("Заголовок обязателен")
        else:
            fields = {
                "title": title,
                "description": description or None,
                "due_date": due_date if has_due else None,
                "category": category,
            }
            if edit_id:
                saved = call_api(lambda: api.update_todo(edit_id, fields), "Задача обновлена!")
            else:
                saved = call_api(lambda: api.create_todo(fields), "Задача создана!")
            if saved:
                go("Tasks")
                st.rerun()

elif st.session_state.menu == "Admin":
    st.header("Администрирование")
    if not session.is_admin:
        st.error("Доступ только для администратора")
        st.stop()

    tab_users, tab_todos = st.tabs(["Пользователи", "Все задачи"])
    with tab_users:
        users = call_api(api.fetch_users) or []
        for u in users:
            col_name, col_email, col_role, col_action = st.columns(4)
            col_name.write(u["username"])
            col_email.write(u["email"])
            col_role.write(u["role"])
            is_self = u["id"] == session.user["id"]
            new_role = ROLE_USER if u["role"] == ROLE_ADMIN else ROLE_ADMIN
            label = "Понизить" if u["role"] == ROLE_ADMIN else "Повысить"
            if col_action.button(label, key=f"role_{u['id']}", disabled=is_self):
                if call_api(lambda: api.update_user_role(u["id"], new_role), "Роль изменена"):
                    st.rerun()

    with tab_todos:
        todos = call_api(lambda: api.fetch_todos(all_users=True)) or []
        if not todos:
            st.info("В системе нет задач")
        for t in todos:
            col_title, col_owner, col_status, col_action = st.columns(4)
            col_title.write(t["title"])
            col_owner.write(t.get("owner_name") or "")
            col_status.write("Готово" if t["completed"] else "В работе")
            delete_button(t["id"], "admin_delete", col_action)
