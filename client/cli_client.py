#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Identity key generation, publication and fingerprint verification
- Envelope-encrypted text and file messages
- Passphrase-sealed key backup and restore
- Local encrypted message history
"""

import asyncio
import getpass
import logging
import mimetypes
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from websockets.exceptions import ConnectionClosed
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.analytics import describe_rows, run_self_test
from e2ee.backup import export_keys_sealed, import_keys_sealed
from e2ee.keys import IdentityKeys, format_fingerprint
from e2ee.primitives import BackupRestoreError, CryptoError
from client.messenger import DisplayMessage, Messenger, PeerNotFoundError
from client.relay import DEFAULT_RELAY_URL, RelayClient, RelayError
from client.storage import DEFAULT_STORAGE_DIR, LocalKeyStore


HISTORY_SIZE = 20

HELP_TEXT = """Commands:
  /chat <username>     - Start chat with user
  /exit                - Exit current chat
  /file <path>         - Send an encrypted file in the current chat
  /save <id> [path]    - Save a received attachment
  /verify              - Compare the current peer's fingerprint
  /fingerprint         - Show your own fingerprint
  /name <display name> - Set your display name
  /backup <path>       - Write a passphrase-sealed key backup
  /users               - List all users
  /online              - List online users
  /history             - Show conversation list
  /analytics           - Run the crypto self-test and describe this chat's envelopes
  /quit                - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, server_url: str = DEFAULT_RELAY_URL, storage_dir: str = DEFAULT_STORAGE_DIR):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the relay
            storage_dir: Directory for the local encrypted store
        """
        self.relay = RelayClient(server_url)
        self.storage_dir = storage_dir
        self.username: Optional[str] = None
        self.storage: Optional[LocalKeyStore] = None
        self.keys: Optional[IdentityKeys] = None
        self.messenger: Optional[Messenger] = None
        self.running = False
        self.current_chat: Optional[Dict] = None
        self.received_files: Dict[int, DisplayMessage] = {}
        self._session: Optional[PromptSession] = None

    @property
    def session(self) -> PromptSession:
        if self._session is None:
            self._session = PromptSession()
        return self._session

    @property
    def current_peer(self) -> Optional[str]:
        if not self.current_chat:
            return None
        return self.current_chat["peer"]

    async def _unlock_storage(self, username: str, password: str) -> bool:
        self.storage = LocalKeyStore(username, self.storage_dir)
        # PBKDF2 runs off the event loop
        if not await asyncio.to_thread(self.storage.unlock, password):
            print("Failed to unlock local storage with this password")
            return False
        return True

    async def _publish_identity(self):
        record = self.keys.public_identity(self.username)
        await self.relay.publish_identity(record)

    def _start_session(self):
        self.messenger = Messenger(self.username, self.keys, self.relay, self.storage)

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new user account.

        Args:
            username: Desired username
            password: Password (also unlocks local storage)

        Returns:
            True if successful
        """
        try:
            await self.relay.register(username, password)
            self.username = username

            if not await self._unlock_storage(username, password):
                return False

            print("Generating identity keys (RSA-4096 takes a moment)...")
            self.keys = await asyncio.to_thread(IdentityKeys.generate)
            self.storage.save_identity(self.keys)
            await self._publish_identity()
            self._start_session()

            print(f"Registration successful! Welcome, {username}")
            print(f"Your fingerprint: {format_fingerprint(self.keys.fingerprint())}")
            return True

        except RelayError as e:
            print(f"Registration failed: {e}")
            return False

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account.

        Loads the identity keys from local storage, or from a backup file if
        this device has none.

        Returns:
            True if successful
        """
        try:
            await self.relay.login(username, password)
            self.username = username

            if not await self._unlock_storage(username, password):
                return False

            self.keys = self.storage.load_identity()
            if self.keys is None:
                print("No identity keys on this device.")
                if not await self.restore_from_backup():
                    return False

            published = await self.relay.lookup_identity(username)
            if published is None or published.fingerprint != self.keys.fingerprint():
                print("Publishing identity keys")
                await self._publish_identity()

            self._start_session()
            print(f"Login successful! Welcome back, {username}")
            return True

        except RelayError as e:
            print(f"Login failed: {e}")
            return False

    async def restore_from_backup(self) -> bool:
        """Restore identity keys from a sealed backup file"""
        path = input("Backup file path (empty to cancel): ").strip()
        if not path:
            return False

        try:
            text = Path(path).expanduser().read_text()
        except OSError as e:
            print(f"Cannot read backup: {e}")
            return False

        passphrase = getpass.getpass("Backup passphrase: ")
        try:
            self.keys = await asyncio.to_thread(import_keys_sealed, text, passphrase)
        except BackupRestoreError:
            print("Backup could not be restored (wrong passphrase or damaged file)")
            return False

        self.storage.save_identity(self.keys)
        print("Identity keys restored")
        return True

    async def backup(self, path: str):
        """Write a passphrase-sealed backup of our private keys"""
        passphrase = await self.session.prompt_async("Backup passphrase: ", is_password=True)
        confirm = await self.session.prompt_async("Repeat passphrase: ", is_password=True)
        if not passphrase or passphrase != confirm:
            print("Passphrases do not match")
            return

        text = await asyncio.to_thread(export_keys_sealed, self.keys, passphrase)
        target = Path(path).expanduser()
        try:
            target.write_text(text)
        except OSError as e:
            print(f"Cannot write backup: {e}")
            return
        print(f"Backup written to {target}")

    def _display(self, message: DisplayMessage, live: bool = False):
        if message.created_at:
            timestamp = datetime.fromisoformat(message.created_at).strftime("%H:%M")
        else:
            timestamp = datetime.now().strftime("%H:%M")
        prefix = "You" if message.sender_id == self.username else message.sender_id
        line = f"[{timestamp}] {prefix}: {message.text}"

        if message.file is not None:
            self.received_files[message.id] = message
            line += f"  <file #{message.id}: {message.file.name}, {message.file.size} bytes - /save {message.id}>"
        elif message.file_error:
            line += f"  <file: {message.file_error}>"

        print(f"\n{line}" if live else line)

    async def start_chat(self, peer_username: str):
        """
        Start or continue a chat with a user.

        Args:
            peer_username: Username to chat with
        """
        try:
            await self.messenger.peer(peer_username)
            chat = await self.relay.open_chat(peer_username)
        except PeerNotFoundError:
            print(f"{peer_username} has not published keys yet")
            return
        except RelayError as e:
            print(f"Failed to open chat: {e}")
            return

        self.current_chat = {"id": chat["id"], "peer": peer_username}

        messages = await self.messenger.recent(chat["id"], HISTORY_SIZE)
        if messages:
            print("\n--- Message History ---")
            for message in messages:
                self._display(message)
            print("--- End History ---\n")

        cached = self.storage.load_peer(peer_username)
        if not cached or not cached["verified"]:
            print(f"Fingerprint of {peer_username} not verified yet. Use /verify.")
        print(f"Chatting with {peer_username}. Type '/exit' to leave chat, '/help' for commands.")

    async def send_message(self, text: str):
        """Send an encrypted message in the current chat"""
        peer = self.current_peer
        try:
            await self.messenger.send_text(self.current_chat["id"], peer, text)
        except (RelayError, CryptoError, PeerNotFoundError) as e:
            print(f"Failed to send message: {e}")
            return
        self.storage.save_message(peer, text, "sent")

    async def send_file(self, path: str):
        """Send an encrypted file in the current chat"""
        file_path = Path(path).expanduser()
        try:
            data = file_path.read_bytes()
        except OSError as e:
            print(f"Cannot read file: {e}")
            return

        media_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        try:
            await self.messenger.send_file(
                self.current_chat["id"], self.current_peer, file_path.name, data, media_type
            )
        except (RelayError, CryptoError, PeerNotFoundError) as e:
            print(f"Failed to send file: {e}")
            return
        print(f"Sent {file_path.name} ({len(data)} bytes)")

    def save_file(self, message_id: str, path: Optional[str] = None):
        try:
            message = self.received_files[int(message_id)]
        except (ValueError, KeyError):
            print("No such attachment")
            return

        target = Path(path or message.file.name).expanduser()
        try:
            target.write_bytes(message.file.data)
        except OSError as e:
            print(f"Cannot write file: {e}")
            return
        print(f"Saved to {target}")

    async def verify_peer(self):
        """Show the peer's fingerprint and record an out-of-band check"""
        peer = self.current_peer
        self.messenger.forget_peer(peer)
        try:
            record = await self.messenger.peer(peer)
        except (PeerNotFoundError, RelayError) as e:
            print(f"Cannot fetch keys: {e}")
            return

        if not record.verify_fingerprint():
            print(f"WARNING: published fingerprint of {peer} does not match its keys!")
            return

        print(f"Fingerprint of {peer}:")
        print(f"  {format_fingerprint(record.fingerprint)}")
        answer = await self.session.prompt_async("Does it match what they read to you? [yes/no] ")
        if answer.strip().lower() == "yes":
            self.storage.remember_peer(record, verified=True)
            print(f"{peer} marked as verified")

    async def receive_messages(self):
        """Background task to receive messages"""
        try:
            async for row in self.relay.subscribe():
                await self._handle_incoming_message(row)
        except ConnectionClosed:
            print("\nConnection closed")
        except (RelayError, OSError) as e:
            print(f"\nReceive error: {e}")
        finally:
            self.running = False

    async def _handle_incoming_message(self, row: dict):
        """Handle a newly stored envelope"""
        sender = row.get("sender_id")
        if sender == self.username:
            # Own echo; the typed line is already on screen
            return

        message = await self.messenger.read(row)
        if message.ok:
            self.storage.save_message(sender, message.text, "received")

        if self.current_chat and row.get("chat_id") == self.current_chat["id"]:
            self._display(message, live=True)
        else:
            print(f"\n[New message from {sender}]: {message.text}")

    async def list_users(self):
        """List all registered users"""
        try:
            users = await self.relay.list_users()
        except RelayError as e:
            print(f"Failed to list users: {e}")
            return
        print("Registered users:")
        for user in users:
            print(f"  - {user}")

    async def list_online_users(self):
        """List currently online users"""
        try:
            users = await self.relay.list_online_users()
        except RelayError as e:
            print(f"Failed to list online users: {e}")
            return
        print("Online users:")
        for user in users:
            if user != self.username:
                print(f"  - {user}")

    async def list_conversations(self):
        try:
            chats = await self.relay.list_chats()
        except RelayError as e:
            print(f"Failed to list chats: {e}")
            return
        print("Conversations:")
        for chat in chats:
            peer = chat['participant_b'] if chat['participant_a'] == self.username else chat['participant_a']
            print(f"  - {peer}")

    async def show_analytics(self, text_iterations: int = 100, file_iterations: int = 20):
        """Run the crypto self-test and describe the current chat's envelopes"""
        print("Running self-test...")
        report = await asyncio.to_thread(run_self_test, text_iterations, file_iterations)

        for label, bench in (("Text", report.text), ("File", report.file)):
            print(f"{label} ({bench.size} bytes, {bench.encrypt.count} runs): "
                  f"encrypt {bench.encrypt.mean:.3f} ms avg, decrypt {bench.decrypt.mean:.3f} ms avg")
        print(f"Diffusion: {report.diffusion:.2f}% of output bits changed by a 1-bit flip")
        print(f"Confusion: {report.confusion:.2f}% of output bits differ under a new key")
        collisions = report.collisions
        print(f"Hash collisions: {collisions.collisions} in {collisions.tested} samples")

        if not self.current_chat:
            return
        try:
            rows = await self.relay.list_messages(self.current_chat["id"], limit=HISTORY_SIZE, latest=True)
        except RelayError as e:
            print(f"Failed to load messages: {e}")
            return

        print(f"\nEnvelopes with {self.current_peer}:")
        for details in describe_rows(rows):
            integrity = "ok" if details.integrity_ok else "FAILED"
            unique = "" if details.hash_unique else " (duplicate hash)"
            attachment = f", file {details.file_size} bytes" if details.has_file else ""
            print(f"  [{details.id}] {details.sender_id}: {details.wrap_algorithm}, "
                  f"{details.ciphertext_size} bytes, hash {(details.integrity_hash or '')[:16]} "
                  f"{integrity}{unique}{attachment}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True

        # Start receive task
        receive_task = asyncio.create_task(self.receive_messages())

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.current_chat:
                        prompt_text = f"[{self.current_peer}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await self.session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            receive_task.cancel()
            await self.relay.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) == 2 else ""
        in_chat = ("/file", "/verify", "/exit")

        if cmd in in_chat and not self.current_chat:
            print("No active chat. Use /chat <username> to start.")
        elif cmd == "/chat" and arg:
            await self.start_chat(arg)
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/file" and arg:
            await self.send_file(arg)
        elif cmd == "/save" and arg:
            self.save_file(*arg.split(maxsplit=1))
        elif cmd == "/verify":
            await self.verify_peer()
        elif cmd == "/fingerprint":
            print(f"Your fingerprint: {format_fingerprint(self.keys.fingerprint())}")
        elif cmd == "/name":
            try:
                await self.relay.set_display_name(arg or None)
                print("Display name updated")
            except RelayError as e:
                print(f"Failed to update display name: {e}")
        elif cmd == "/backup" and arg:
            await self.backup(arg)
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/online":
            await self.list_online_users()
        elif cmd == "/history":
            await self.list_conversations()
        elif cmd == "/analytics":
            await self.show_analytics()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(level=logging.WARNING)
    client = ChatClient()

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.relay.aclose()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
