from rgcd.constants import R_ALREADY_ONLINE, R_CODE_EXISTS, R_CONFLICT, R_USERNAME_TAKEN
from rgcd.errors import (
    AlreadyOnlineError,
    ChatError,
    ConflictError,
    InvitationCodeExistsError,
    UsernameTakenError,
)


def test_plain_conflict_has_its_own_reason() -> None:
    err = ConflictError()
    assert isinstance(err, ChatError)
    assert err.reason == R_CONFLICT
    assert err.message == "conflict"


def test_conflict_subclasses_keep_specific_reasons() -> None:
    assert UsernameTakenError("bob").reason == R_USERNAME_TAKEN
    assert AlreadyOnlineError("bob").reason == R_ALREADY_ONLINE
    assert InvitationCodeExistsError("X").reason == R_CODE_EXISTS
