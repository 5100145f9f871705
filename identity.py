from dataclasses import dataclass
from typing import Optional

from db import session_scope
from errors import NotFound
from models import Gender, User

_GENDER_LABELS = {
    "male": Gender.male, "m": Gender.male, "man": Gender.male, "ذكر": Gender.male,
    "female": Gender.female, "f": Gender.female, "woman": Gender.female, "أنثى": Gender.female,
    "either": Gender.either, "any": Gender.either, "both": Gender.either,
    "أي": Gender.either, "كلاهما": Gender.either,
}


def resolve_gender(value) -> Optional[Gender]:
    """Map a profile or form label onto Gender; unknown labels resolve to None."""
    if value is None:
        return None
    if isinstance(value, Gender):
        return value
    return _GENDER_LABELS.get(str(value).strip().lower())


@dataclass(frozen=True)
class UserProfile:
    user_id: int
    name: str
    gender: Optional[Gender] = None


class IdentityProvider:
    """Supplies the profile of an already-authenticated user."""

    def profile(self, user_id: int) -> UserProfile:
        raise NotImplementedError


class UserDirectory(IdentityProvider):
    def profile(self, user_id: int) -> UserProfile:
        with session_scope() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFound("This user could not be found.", user_id=user_id)
        return UserProfile(user_id=user.id, name=user.name, gender=resolve_gender(user.gender))
