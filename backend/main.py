from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import create_engine, Column, String, Text, Date, DateTime, Boolean, ForeignKey, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship, joinedload
from sqlalchemy import event
from passlib.context import CryptContext
from datetime import date, datetime, timedelta, timezone
from pydantic import BaseModel, StrictBool, constr, field_validator
from typing import List, Literal, Optional
import jwt
import logging
import uuid

# -----------------------------
# Настройки приложения и БД
# -----------------------------
import os
from dotenv import load_dotenv

load_dotenv()  # Загружаем переменные из .env файла

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("todo_api")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if os.getenv("POSTGRES_HOST"):
        return (
            f"postgresql+psycopg2://{os.getenv('POSTGRES_USER')}:{os.getenv('POSTGRES_PASSWORD')}"
            f"@{os.getenv('POSTGRES_HOST')}:{os.getenv('POSTGRES_PORT', '5432')}/{os.getenv('POSTGRES_DB')}"
        )
    return "sqlite:///./todo.db"


DATABASE_URL = _database_url()
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

ROLE_USER = "user"
ROLE_ADMIN = "admin"
Role = Literal["user", "admin"]

CATEGORY_URGENT = "Urgent"
CATEGORY_NON_URGENT = "Non-Urgent"
Category = Literal["Urgent", "Non-Urgent"]

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Модели БД
# -----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=_new_id)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(16), nullable=False, default=ROLE_USER)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    tasks = relationship("Task", back_populates="owner")

    def __repr__(self):
        # hashed_password намеренно не выводим
        return f"<User id={self.id!r} username={self.username!r} role={self.role!r}>"


class Task(Base):
    __tablename__ = "tasks"
    id = Column(String(32), primary_key=True, default=_new_id)
    title = Column(String(100), nullable=False)
    description = Column(Text)
    due_date = Column(Date)
    category = Column(String(16), nullable=False, default=CATEGORY_NON_URGENT)
    completed = Column(Boolean, nullable=False, default=False)
    owner_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    owner = relationship("User", back_populates="tasks")

    @property
    def owner_name(self) -> Optional[str]:
        return self.owner.username if self.owner is not None else None


@event.listens_for(Task, "init", propagate=True)
def _task_init(target, args, kwargs):
    # значения по умолчанию видны ещё до flush
    if "completed" not in kwargs:
        target.completed = False
    if "category" not in kwargs:
        target.category = CATEGORY_NON_URGENT


# -----------------------------
# Pydantic-схемы
# -----------------------------
class TaskCreate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=100)
    description: Optional[constr(max_length=500)] = None
    due_date: Optional[date] = None
    category: Category = CATEGORY_NON_URGENT
    completed: StrictBool = False

    @field_validator("due_date", mode="before")
    @classmethod
    def _empty_due_date(cls, value):
        # форма присылает пустую строку, если дата не выбрана
        return None if value == "" else value


class TaskUpdate(BaseModel):
    title: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    description: Optional[constr(max_length=500)] = None
    due_date: Optional[date] = None
    category: Optional[Category] = None
    completed: Optional[StrictBool] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _empty_due_date(cls, value):
        return None if value == "" else value

    @field_validator("title", "category", "completed")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("поле не может быть null")
        return value


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    due_date: Optional[date] = None
    category: str
    completed: bool
    owner_id: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AdminTaskOut(TaskOut):
    owner_name: Optional[str] = None


class UserCreate(BaseModel):
    username: constr(strip_whitespace=True, min_length=3, max_length=50)
    email: constr(strip_whitespace=True, to_lower=True, max_length=255, pattern=EMAIL_PATTERN)
    password: constr(min_length=8, max_length=128)


class LoginRequest(BaseModel):
    credential: constr(strip_whitespace=True, min_length=1)
    password: str


class UserOut(BaseModel):
    id: str
    username: str
    email: str
    role: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    user: UserOut
    token: str


class RoleUpdate(BaseModel):
    role: Role


class Principal(BaseModel):
    """Личность, извлечённая из токена: только id и роль."""
    id: str
    role: Role


# -----------------------------
# Ошибки предметной области
# -----------------------------
TASK_NOT_FOUND = "Задача не найдена"
USER_NOT_FOUND = "Пользователь не найден"
INVALID_CREDENTIALS = "Неверные учетные данные"
ADMIN_ONLY = "Доступ только для администратора"
SELF_ROLE_CHANGE = "Нельзя изменить собственную роль"


class ServiceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "Внутренняя ошибка сервера"

    def __init__(self, detail: Optional[str] = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class ValidationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Некорректные данные"


class AuthFailed(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    detail = INVALID_CREDENTIALS


class Forbidden(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = ADMIN_ONLY


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = TASK_NOT_FOUND


# -----------------------------
# Безопасность и JWT
# -----------------------------
SECRET_KEY = os.getenv("JWT_SECRET") or "dev_change_me"
ALGORITHM = "HS256"
# 0 — токен без срока действия (claim exp не добавляется)
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "0"))

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

# Сверяемся с этим хешем, когда пользователь не найден: ответ тот же, что и при неверном пароле
_DUMMY_HASH = pwd_context.hash(uuid.uuid4().hex)


def verify_password(plain_password, hashed_password):
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(principal_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = {"sub": principal_id, "role": role}
    if expires_delta is None and ACCESS_TOKEN_EXPIRE_MINUTES > 0:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    if expires_delta is not None:
        to_encode["exp"] = _utcnow() + expires_delta
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str):
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None


# -----------------------------
# Правила доступа
# -----------------------------
def is_admin(principal) -> bool:
    return principal.role == ROLE_ADMIN


def can_modify(principal, task) -> bool:
    """Владелец задачи или администратор."""
    return is_admin(principal) or principal.id == task.owner_id


def can_read_all(principal) -> bool:
    return is_admin(principal)


def can_change_role(actor, target_id: str) -> bool:
    # Себе роль не меняет никто, включая администратора
    return is_admin(actor) and actor.id != target_id


# -----------------------------
# Зависимости
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Требуется аутентификация")
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Неверный токен")
    principal_id = payload.get("sub")
    role = payload.get("role")
    if not isinstance(principal_id, str) or not principal_id or role not in (ROLE_USER, ROLE_ADMIN):
        raise _unauthorized("Неверный токен")
    return Principal(id=principal_id, role=role)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not is_admin(principal):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=ADMIN_ONLY)
    return principal


# -----------------------------
# Хранилище пользователей
# -----------------------------
def get_user_by_credential(db: Session, credential: str) -> Optional[User]:
    """Ищет пользователя по имени (как хранится) или по email (в нижнем регистре)."""
    value = (credential or "").strip()
    if not value:
        return None
    return db.query(User).filter(or_(User.username == value, User.email == value.lower())).first()


def register_user(db: Session, data: UserCreate) -> User:
    if db.query(User).filter(User.username == data.username).first():
        raise ValidationFailed("Имя пользователя уже занято")
    if db.query(User).filter(User.email == data.email).first():
        raise ValidationFailed("Email уже зарегистрирован")
    user = User(
        username=data.username,
        email=data.email,
        hashed_password=get_password_hash(data.password),
        role=ROLE_USER,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # параллельная регистрация с теми же данными
        db.rollback()
        raise ValidationFailed("Пользователь уже существует")
    db.refresh(user)
    logger.info("Зарегистрирован пользователь %s", user.username)
    return user


def authenticate_user(db: Session, credential: str, password: str) -> User:
    user = get_user_by_credential(db, credential)
    hashed = user.hashed_password if user is not None else _DUMMY_HASH
    password_ok = verify_password(password, hashed)
    if user is None or not password_ok:
        logger.info("Неудачная попытка входа: %s", credential)
        raise AuthFailed()
    return user


def issue_session(user: User) -> dict:
    return {
        "user": UserOut.model_validate(user),
        "token": create_access_token(user.id, user.role),
    }


def list_users(db: Session) -> List[User]:
    return db.query(User).order_by(User.created_at).all()


def change_user_role(db: Session, actor: Principal, target_id: str, role: str) -> User:
    if not can_change_role(actor, target_id):
        raise Forbidden(SELF_ROLE_CHANGE if actor.id == target_id else ADMIN_ONLY)
    user = db.query(User).filter(User.id == target_id).first()
    if user is None:
        raise NotFound(USER_NOT_FOUND)
    previous = user.role
    user.role = role
    db.commit()
    db.refresh(user)
    logger.info("Администратор %s сменил роль %s: %s -> %s", actor.id, user.username, previous, role)
    return user


def bootstrap_admin(db: Session) -> Optional[User]:
    """Создаёт администратора из ADMIN_USERNAME/ADMIN_EMAIL/ADMIN_PASSWORD, если его ещё нет.

    Пустое имя или пароль в окружении отключают создание.
    """
    username = os.getenv("ADMIN_USERNAME", "admin").strip()
    email = os.getenv("ADMIN_EMAIL", "admin@example.com").strip().lower()
    password = os.getenv("ADMIN_PASSWORD", "admin")
    if not username or not password:
        return None
    if db.query(User).filter(User.username == username).first():
        return None
    if db.query(User).filter(User.email == email).first():
        logger.warning("Администратор не создан: email %s уже занят", email)
        return None
    admin_user = User(
        username=username,
        email=email,
        hashed_password=get_password_hash(password),
        role=ROLE_ADMIN,
    )
    db.add(admin_user)
    db.commit()
    db.refresh(admin_user)
    return admin_user


# -----------------------------
# Хранилище задач
# -----------------------------
def create_task(db: Session, owner_id: str, data: TaskCreate) -> Task:
    # владелец берётся только из токена
    task = Task(**data.model_dump(), owner_id=owner_id)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def find_owned_by(db: Session, owner_id: str) -> List[Task]:
    return db.query(Task).filter(Task.owner_id == owner_id).order_by(Task.created_at).all()


def find_all(db: Session, actor) -> List[Task]:
    if not can_read_all(actor):
        raise Forbidden(ADMIN_ONLY)
    return db.query(Task).options(joinedload(Task.owner)).order_by(Task.created_at).all()


def get_if_authorized(db: Session, task_id: str, actor) -> Task:
    task = db.query(Task).filter(Task.id == task_id).first()
    # чужая задача неотличима от несуществующей
    if task is None or not can_modify(actor, task):
        raise NotFound(TASK_NOT_FOUND)
    return task


def update_if_authorized(db: Session, task_id: str, actor, patch: TaskUpdate) -> Task:
    task = get_if_authorized(db, task_id, actor)
    for field, value in patch.model_dump(exclude_unset=True).items():
        setattr(task, field, value)
    db.commit()
    db.refresh(task)
    return task


def delete_if_authorized(db: Session, task_id: str, actor) -> str:
    task = get_if_authorized(db, task_id, actor)
    if task.owner_id != actor.id:
        logger.info("Администратор %s удалил задачу %s пользователя %s", actor.id, task.id, task.owner_id)
    db.delete(task)
    db.commit()
    return task_id


# -----------------------------
# Инициализация приложения
# -----------------------------
app = FastAPI(title="SecureTodo API")

_cors_origins = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if o.strip()]
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def startup():
    # Автоматическая инициализация таблиц
    Base.metadata.create_all(bind=engine)
    if not os.getenv("JWT_SECRET"):
        logger.warning("JWT_SECRET не задан, используется ключ для разработки")
    db = SessionLocal()
    try:
        admin = bootstrap_admin(db)
        if admin:
            logger.info("Пользователь %s (admin) создан", admin.username)
    finally:
        db.close()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        # введённое значение (например, пароль) обратно не отдаём
        content={"detail": jsonable_encoder([{k: v for k, v in err.items() if k != "input"} for err in exc.errors()])},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Необработанная ошибка: %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": ServiceError.detail},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# -----------------------------
# Эндпоинты аутентификации
# -----------------------------
@app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(user: UserCreate, db: Session = Depends(get_db)):
    new_user = register_user(db, user)
    return issue_session(new_user)


@app.post("/auth/login", response_model=AuthResponse)
def login(form: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate_user(db, form.credential, form.password)
    return issue_session(user)


# -----------------------------
# CRUD для задач
# -----------------------------
@app.get("/todos", response_model=List[TaskOut])
def get_tasks(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return find_owned_by(db, principal.id)


@app.get("/todos/admin/all", response_model=List[AdminTaskOut])
def get_all_tasks(db: Session = Depends(get_db), principal: Principal = Depends(require_admin)):
    return find_all(db, principal)


@app.post("/todos", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def post_task(task: TaskCreate, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return create_task(db, principal.id, task)


@app.get("/todos/{task_id}", response_model=TaskOut)
def get_task(task_id: str, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return get_if_authorized(db, task_id, principal)


@app.patch("/todos/{task_id}", response_model=TaskOut)
def patch_task(
    task_id: str,
    task_update: TaskUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return update_if_authorized(db, task_id, principal, task_update)


@app.delete("/todos/{task_id}")
def delete_task(task_id: str, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    deleted_id = delete_if_authorized(db, task_id, principal)
    return {"id": deleted_id, "detail": "Задача удалена"}


# -----------------------------
# Администрирование пользователей
# -----------------------------
@app.get("/admin/users", response_model=List[UserOut])
def get_users(db: Session = Depends(get_db), principal: Principal = Depends(require_admin)):
    return list_users(db)


@app.patch("/admin/users/{user_id}/role", response_model=UserOut)
def patch_user_role(
    user_id: str,
    body: RoleUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    return change_user_role(db, principal, user_id, body.role)
