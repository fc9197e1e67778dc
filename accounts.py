"""
Account Store: users keyed by identity-provider UID and by email.

Users are never deleted, only deactivated. Registration also creates the
user's cart.
"""

import logging
from typing import List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import CARTS, USERS, create_document, object_id, utcnow
from errors import AlreadyExists, Forbidden, NotFound, Unauthorized
from schemas import Cart, ProfileUpdate, User, UserOut, UserRegistration, UserRole

logger = logging.getLogger(__name__)


class AccountStore:
    def __init__(self, db: Database, admin_uids: Optional[List[str]] = None):
        self.db = db
        self.users = db[USERS]
        self.admin_uids = set(admin_uids or [])

    def register(self, request: UserRegistration) -> UserOut:
        if self.users.count_documents({"$or": [{"email": request.email}, {"firebase_uid": request.firebase_uid}]}):
            raise AlreadyExists("User already exists")
        role = UserRole.ADMIN if request.firebase_uid in self.admin_uids else UserRole.CUSTOMER
        user = User(**request.model_dump(), role=role, is_active=True)
        try:
            user_id = create_document(self.db, USERS, user)
        except DuplicateKeyError:
            # lost a race with a concurrent registration
            raise AlreadyExists("User already exists")
        create_document(self.db, CARTS, Cart(user_id=user_id))
        logger.info("User registered: %s", request.email)
        return UserOut.from_doc(self._find(user_id))

    # -----------------
    # Lookups
    # -----------------

    def find_by_uid(self, firebase_uid: str) -> Optional[dict]:
        return self.users.find_one({"firebase_uid": firebase_uid})

    def _find(self, user_id: str) -> dict:
        oid = object_id(user_id)
        doc = self.users.find_one({"_id": oid}) if oid else None
        if doc is None:
            raise NotFound("User", user_id)
        return doc

    def require_by_uid(self, firebase_uid: str) -> dict:
        doc = self.find_by_uid(firebase_uid)
        if doc is None:
            raise NotFound("User", firebase_uid)
        return doc

    def resolve_caller(self, firebase_uid: Optional[str]) -> dict:
        """User document behind the caller-identity header."""
        if not firebase_uid:
            raise Unauthorized("Missing caller identity header")
        doc = self.require_by_uid(firebase_uid)
        if not doc.get("is_active", True):
            raise Forbidden("User account is deactivated")
        return doc

    def get_by_uid(self, firebase_uid: str) -> UserOut:
        return UserOut.from_doc(self.require_by_uid(firebase_uid))

    def get_by_id(self, user_id: str) -> UserOut:
        return UserOut.from_doc(self._find(user_id))

    def get_by_email(self, email: str) -> UserOut:
        doc = self.users.find_one({"email": email})
        if doc is None:
            raise NotFound("User", email)
        return UserOut.from_doc(doc)

    def is_active(self, firebase_uid: str) -> bool:
        doc = self.find_by_uid(firebase_uid)
        return bool(doc and doc.get("is_active", True))

    def is_admin(self, firebase_uid: str) -> bool:
        doc = self.find_by_uid(firebase_uid)
        return bool(doc and doc.get("role") == UserRole.ADMIN.value)

    def active_count(self, role: UserRole) -> int:
        return self.users.count_documents({"role": role.value, "is_active": True})

    # -----------------
    # Mutations
    # -----------------

    def update_profile(self, user_id: str, request: ProfileUpdate) -> UserOut:
        # email and firebase_uid are fixed at registration
        doc = self._find(user_id)
        changes = request.model_dump()
        changes["updated_at"] = utcnow()
        self.users.update_one({"_id": doc["_id"]}, {"$set": changes})
        logger.info("User updated: %s", doc["email"])
        return UserOut.from_doc(self.users.find_one({"_id": doc["_id"]}))

    def _set(self, user_id: str, **fields) -> UserOut:
        doc = self._find(user_id)
        fields["updated_at"] = utcnow()
        self.users.update_one({"_id": doc["_id"]}, {"$set": fields})
        return UserOut.from_doc(self.users.find_one({"_id": doc["_id"]}))

    def deactivate(self, user_id: str) -> UserOut:
        user = self._set(user_id, is_active=False)
        logger.info("User deactivated: %s", user.email)
        return user

    def activate(self, user_id: str) -> UserOut:
        user = self._set(user_id, is_active=True)
        logger.info("User activated: %s", user.email)
        return user

    def set_role(self, user_id: str, role: UserRole) -> UserOut:
        user = self._set(user_id, role=role.value)
        logger.info("User %s role set to %s", user.email, role.value)
        return user
