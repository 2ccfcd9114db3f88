# credential_store.py
import json
import logging
from pathlib import Path
from typing import List, Optional

from passlib.context import CryptContext

from errors import InvalidClientError
from models import Client

logger = logging.getLogger(__name__)

# Client secret hashing; bcrypt for new hashes, pbkdf2 hashes still verify
pwd_context = CryptContext(schemes=["bcrypt", "pbkdf2_sha256"], deprecated="auto")


def hash_client_secret(secret: str) -> str:
    return pwd_context.hash(secret)


class CredentialStore:
    """Read-only view over registered clients."""

    def __init__(self, store):
        self.store = store

    async def lookup_client(self, client_id: str) -> Optional[Client]:
        if not client_id:
            return None
        return await self.store.get_client(client_id)

    def verify_secret(self, client: Client, secret: str) -> bool:
        try:
            return pwd_context.verify(secret, client.client_secret_hash)
        except ValueError:
            logger.error(f"Client '{client.client_id}' has an unrecognised secret hash")
            return False

    async def authenticate(self, client_id: str, secret: Optional[str]) -> Client:
        """Return the client for valid credentials, else raise ``invalid_client``.

        Unknown ids and wrong secrets fail with the same error, and an unknown
        id still pays for one hash verification.
        """
        client = await self.lookup_client(client_id)
        if client is None:
            pwd_context.dummy_verify()
            logger.warning("Client authentication failed")
            raise InvalidClientError()
        if not secret or not self.verify_secret(client, secret):
            logger.warning("Client authentication failed")
            raise InvalidClientError()
        return client


def load_clients_file(path) -> List[Client]:
    """Load client registrations from a JSON list.

    Entries carry either ``client_secret_hash`` or a plain ``client_secret``
    which is hashed on load.
    """
    entries = json.loads(Path(path).read_text())
    clients = []
    for entry in entries:
        entry = dict(entry)
        secret = entry.pop("client_secret", None)
        if secret is not None and "client_secret_hash" not in entry:
            entry["client_secret_hash"] = hash_client_secret(secret)
        clients.append(Client(**entry))
    logger.info(f"Loaded {len(clients)} OAuth2 clients from {path}")
    return clients
