import getpass
from typing import Callable, Optional, Protocol

from netaccess.errors import CredentialError
from netaccess.models import Credentials


class CredentialSource(Protocol):
    def get(self) -> Credentials:
        ...


class PromptCredentialSource:
    """Asks for the username on stdin and the password with hidden input."""

    def __init__(
        self,
        username: Optional[str] = None,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.username = username
        self._read_line = read_line
        self._read_secret = read_secret

    def get(self) -> Credentials:
        username = (self.username or self._read_line("Enter username: ")).strip()
        if not username:
            raise CredentialError("Username must not be empty")
        password = self._read_secret(f"Enter password for {username}: ")
        if not password:
            raise CredentialError("Password must not be empty")
        return Credentials(username, password)
