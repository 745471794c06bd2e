import asyncio
import re
import ssl
from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio
import trustme

from ftplink import Basic, FtpClient, Timeout

CHUNK = 65536


class Connection:
    """Per-client state of the scripted server."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.user: Optional[str] = None
        self.logged = False
        self.rename: Optional[str] = None
        self.secured = False
        self.protect = False
        self.listener: Optional[asyncio.AbstractServer] = None
        self.inbound: Optional[asyncio.Future] = None
        self.target: Optional[Tuple[str, int]] = None

    def close_listener(self) -> None:
        if self.listener is not None:
            self.listener.close()
            self.listener = None


class FakeServer:
    """
    Minimal in-process FTP server with an in-memory namespace.

    Every command line it receives is recorded in ``commands``. Behaviour can
    be bent per test through the knobs set in ``__init__``.
    """

    def __init__(self) -> None:
        self.host = "127.0.0.1"
        self.port: Optional[int] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self.writers: List[asyncio.StreamWriter] = []

        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = {"/"}
        # None means no password is asked for, "*" accepts any password
        self.users: Dict[str, Optional[str]] = {"u": "p", "anonymous": "*"}
        self.commands: List[str] = []

        self.greeting: Optional[str] = "220 Fake FTP server ready"
        self.auth_reply = "502 AUTH not supported"
        self.reject_epsv = False
        self.pasv_address = "127,0,0,1"
        self.announce_size = False
        self.early_success = False
        self.replies: Dict[str, str] = {}
        self.silent: Set[str] = set()
        self.delay = 0.0
        # Reply to a torn-down data connection; None sends nothing
        self.abort_reply: Optional[str] = "426 Connection closed; transfer aborted"
        # Server side TLS context; AUTH TLS is accepted only when set
        self.tls: Optional[ssl.SSLContext] = None
        self.implicit = False

        self.data_open = 0
        self.data_max = 0
        self.data_total = 0
        self.data_tls = 0

    async def start(self) -> None:
        context = self.tls if self.implicit else None
        self.server = await asyncio.start_server(self.handle, self.host, 0, ssl=context)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for writer in self.writers:
            writer.transport.abort()
        self.server.close()
        await self.server.wait_closed()

    def seen(self, verb: str) -> List[str]:
        return [c for c in self.commands if c.split(" ", 1)[0].upper() == verb]

    async def send(self, writer: asyncio.StreamWriter, text: str) -> None:
        for line in text.split("\n"):
            writer.write(line.rstrip("\r").encode("utf-8") + b"\r\n")
        await writer.drain()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        conn = Connection(reader, writer)
        conn.secured = self.implicit
        try:
            if self.greeting is not None:
                await self.send(writer, self.greeting)
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip("\r\n")
                self.commands.append(text)
                verb, _, argument = text.partition(" ")
                verb = verb.upper()

                if verb in self.silent:
                    continue
                if verb in self.replies:
                    await self.send(writer, self.replies[verb])
                    continue

                handler = getattr(self, "ftp_" + verb.lower(), None)
                if handler is None:
                    await self.send(writer, "502 Command not implemented")
                    continue
                if await handler(conn, argument) is False:
                    break
        except (ConnectionError, OSError):
            pass
        finally:
            conn.close_listener()
            writer.close()

    # Data connections

    async def passive(self, conn: Connection) -> int:
        conn.close_listener()
        loop = asyncio.get_running_loop()
        conn.inbound = inbound = loop.create_future()

        async def accepted(reader, writer):
            if inbound.done():
                writer.transport.abort()
            else:
                inbound.set_result((reader, writer))

        conn.listener = await asyncio.start_server(accepted, self.host, 0)
        return conn.listener.sockets[0].getsockname()[1]

    def ready(self, conn: Connection) -> bool:
        return conn.inbound is not None or conn.target is not None

    async def open_data(self, conn: Connection):
        if conn.inbound is not None:
            try:
                reader, writer = await asyncio.wait_for(conn.inbound, 5)
            finally:
                conn.close_listener()
                conn.inbound = None
        else:
            target, conn.target = conn.target, None
            reader, writer = await asyncio.open_connection(*target)
        self.data_open += 1
        self.data_total += 1
        self.data_max = max(self.data_max, self.data_open)
        if conn.protect:
            await writer.start_tls(self.tls)
            self.data_tls += 1
        return reader, writer

    async def close_data(self, writer: asyncio.StreamWriter) -> None:
        self.data_open -= 1
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def send_data(self, conn: Connection, payload: bytes) -> None:
        reader, writer = await self.open_data(conn)
        try:
            for start in range(0, len(payload), CHUNK):
                writer.write(payload[start:start + CHUNK])
                await writer.drain()
                if self.delay:
                    await asyncio.sleep(self.delay)
        except (ConnectionError, OSError):
            await self.close_data(writer)
            if self.abort_reply is not None:
                await self.send(conn.writer, self.abort_reply)
            return
        await self.close_data(writer)
        await self.send(conn.writer, "226 Transfer complete")

    # Commands

    async def ftp_user(self, conn: Connection, argument: str) -> None:
        conn.user = argument
        if argument in self.users and self.users[argument] is None:
            conn.logged = True
            await self.send(conn.writer, "230 Logged in without password")
        else:
            await self.send(conn.writer, "331 Password required")

    async def ftp_pass(self, conn: Connection, argument: str) -> None:
        expected = self.users.get(conn.user, "")
        if conn.user in self.users and expected in ("*", argument):
            conn.logged = True
            await self.send(conn.writer, "230 Logged in")
        else:
            await self.send(conn.writer, "530 Login incorrect")

    async def ftp_auth(self, conn: Connection, argument: str) -> None:
        if self.tls is None or conn.secured or argument.upper() not in ("TLS", "SSL"):
            await self.send(conn.writer, self.auth_reply)
            return
        await self.send(conn.writer, "234 Proceed with negotiation")
        await conn.writer.start_tls(self.tls)
        conn.secured = True

    async def ftp_pbsz(self, conn: Connection, argument: str) -> None:
        await self.send(conn.writer, "200 PBSZ=0")

    async def ftp_prot(self, conn: Connection, argument: str) -> None:
        conn.protect = conn.secured and argument.upper() == "P"
        await self.send(conn.writer, "200 Protection level set")

    async def ftp_type(self, conn: Connection, argument: str) -> None:
        if argument.upper() in ("I", "A"):
            await self.send(conn.writer, f"200 Type set to {argument.upper()}")
        else:
            await self.send(conn.writer, "504 Type not supported")

    async def ftp_noop(self, conn: Connection, argument: str) -> None:
        await self.send(conn.writer, "200 NOOP ok")

    async def ftp_stat(self, conn: Connection, argument: str) -> None:
        await self.send(
            conn.writer,
            "211-FakeFTP status\n Connected to 127.0.0.1\n211 End of status",
        )

    async def ftp_quit(self, conn: Connection, argument: str) -> bool:
        await self.send(conn.writer, "221 Goodbye")
        return False

    async def ftp_epsv(self, conn: Connection, argument: str) -> None:
        if self.reject_epsv:
            await self.send(conn.writer, "500 EPSV not understood")
            return
        port = await self.passive(conn)
        await self.send(conn.writer, f"229 Entering Extended Passive Mode (|||{port}|)")

    async def ftp_pasv(self, conn: Connection, argument: str) -> None:
        port = await self.passive(conn)
        await self.send(
            conn.writer,
            f"227 Entering Passive Mode ({self.pasv_address},{port >> 8},{port & 0xFF})",
        )

    async def ftp_port(self, conn: Connection, argument: str) -> None:
        numbers = [int(n) for n in argument.split(",")]
        conn.target = (".".join(map(str, numbers[:4])), numbers[4] * 256 + numbers[5])
        await self.send(conn.writer, "200 PORT command successful")

    async def ftp_eprt(self, conn: Connection, argument: str) -> None:
        match = re.fullmatch(r"\|(\d)\|([^|]+)\|(\d+)\|", argument)
        if match is None:
            await self.send(conn.writer, "501 Bad EPRT argument")
            return
        conn.target = (match.group(2), int(match.group(3)))
        await self.send(conn.writer, "200 EPRT command successful")

    async def ftp_list(self, conn: Connection, argument: str) -> None:
        path = argument or "/"
        if path not in self.dirs and path not in self.files:
            await self.send(conn.writer, "550 No such directory")
            return
        if not self.ready(conn):
            await self.send(conn.writer, "425 Use PORT or PASV first")
            return

        prefix = path.rstrip("/") + "/"
        lines = []
        for name in sorted(self.dirs):
            if name != path and name.startswith(prefix) and "/" not in name[len(prefix):]:
                lines.append(f"drwxr-xr-x 2 ftp ftp 0 Jan 01 00:00 {name[len(prefix):]}")
        for name, data in sorted(self.files.items()):
            if name.startswith(prefix) and "/" not in name[len(prefix):]:
                lines.append(f"-rw-r--r-- 1 ftp ftp {len(data)} Jan 01 00:00 {name[len(prefix):]}")

        await self.send(conn.writer, "150 Here comes the directory listing")
        await self.send_data(conn, "".join(line + "\r\n" for line in lines).encode())

    async def ftp_retr(self, conn: Connection, argument: str) -> None:
        if argument not in self.files:
            await self.send(conn.writer, "550 No such file")
            return
        if not self.ready(conn):
            await self.send(conn.writer, "425 Use PORT or PASV first")
            return

        payload = self.files[argument]
        if self.early_success:
            await self.send(conn.writer, "200 Transfer about to begin")
        size = f" ({len(payload)} bytes)" if self.announce_size else ""
        await self.send(conn.writer, f"150 Opening BINARY mode data connection for {argument}{size}")
        await self.send_data(conn, payload)

    async def ftp_stor(self, conn: Connection, argument: str) -> None:
        parent = argument.rsplit("/", 1)[0] or "/"
        if parent not in self.dirs:
            await self.send(conn.writer, "553 Could not create file")
            return
        if not self.ready(conn):
            await self.send(conn.writer, "425 Use PORT or PASV first")
            return

        await self.send(conn.writer, "150 Ok to send data")
        reader, writer = await self.open_data(conn)
        buffer = bytearray()
        try:
            while True:
                block = await reader.read(CHUNK)
                if not block:
                    break
                buffer.extend(block)
        except (ConnectionError, OSError):
            await self.close_data(writer)
            if self.abort_reply is not None:
                await self.send(conn.writer, self.abort_reply)
            return
        await self.close_data(writer)
        self.files[argument] = bytes(buffer)
        await self.send(conn.writer, "226 Transfer complete")

    async def ftp_size(self, conn: Connection, argument: str) -> None:
        if argument in self.files:
            await self.send(conn.writer, f"213 {len(self.files[argument])}")
        else:
            await self.send(conn.writer, "550 Could not get file size")

    async def ftp_mkd(self, conn: Connection, argument: str) -> None:
        parent = argument.rsplit("/", 1)[0] or "/"
        if argument in self.dirs or parent not in self.dirs:
            await self.send(conn.writer, "550 Create directory operation failed")
            return
        self.dirs.add(argument)
        await self.send(conn.writer, f'257 "{argument}" created')

    async def ftp_rmd(self, conn: Connection, argument: str) -> None:
        prefix = argument.rstrip("/") + "/"
        busy = any(p.startswith(prefix) for p in [*self.dirs, *self.files])
        if argument == "/" or argument not in self.dirs or busy:
            await self.send(conn.writer, "550 Remove directory operation failed")
            return
        self.dirs.discard(argument)
        await self.send(conn.writer, "250 Remove directory operation successful")

    async def ftp_dele(self, conn: Connection, argument: str) -> None:
        if self.files.pop(argument, None) is None:
            await self.send(conn.writer, "550 Delete operation failed")
            return
        await self.send(conn.writer, "250 Delete operation successful")

    async def ftp_rnfr(self, conn: Connection, argument: str) -> None:
        if argument not in self.files and argument not in self.dirs:
            await self.send(conn.writer, "550 RNFR command failed")
            return
        conn.rename = argument
        await self.send(conn.writer, "350 Ready for RNTO")

    async def ftp_rnto(self, conn: Connection, argument: str) -> None:
        old, conn.rename = conn.rename, None
        if old is None:
            await self.send(conn.writer, "503 RNFR required first")
            return
        if old in self.files:
            self.files[argument] = self.files.pop(old)
        else:
            self.dirs.discard(old)
            self.dirs.add(argument)
        await self.send(conn.writer, "250 Rename successful")


@pytest_asyncio.fixture
async def server():
    server = FakeServer()
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def client(server):
    client = FtpClient(
        server.host,
        server.port,
        auth=Basic("u", "p"),
        timeout=Timeout(connect=5, operation=10),
    )
    yield client
    await client.destroy()


@pytest.fixture
def payload():
    # Not a multiple of the block size, so the last block is short
    return bytes(range(256)) * 1000 + b"tail"


@pytest.fixture(scope="session")
def authority():
    return trustme.CA()


@pytest.fixture
def server_context(authority):
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    authority.issue_cert("localhost").configure_cert(context)
    return context


@pytest.fixture
def bundle(authority, tmp_path):
    path = tmp_path / "ca.pem"
    authority.cert_pem.write_to_path(str(path))
    return str(path)


@pytest_asyncio.fixture
async def implicit_server(server_context):
    server = FakeServer()
    server.tls = server_context
    server.implicit = True
    await server.start()
    yield server
    await server.stop()
