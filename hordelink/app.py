"""
Headless runner: connect to the rendezvous service, then host or join a room
and keep the session ticking until the game ends or the host goes away.
"""

import argparse
import asyncio
import time

from hordelink.shared.constants import SIGNALING_URL, HOST_TICK_RATE
from hordelink.shared.errors import HordeLinkError
from hordelink.net.rendezvous import RoomDirectoryClient
from hordelink.net.webrtc_transport import AiortcTransport
from hordelink.session.lifecycle import GameSession, SessionPhase


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HordeLink peer-to-peer session runner")
    parser.add_argument("--url", default=SIGNALING_URL, help="rendezvous service websocket URL")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--create", action="store_true", help="create a room and host it")
    mode.add_argument("--join", metavar="CODE", help="join an existing room by code")
    mode.add_argument("--list", action="store_true", help="list open rooms and exit")
    parser.add_argument("--start-after", type=float, default=10.0,
                        help="host: seconds to wait for players before starting")
    return parser.parse_args(argv)


async def run_client_frames(session: GameSession):
    interval = 1.0 / HOST_TICK_RATE
    last = time.monotonic()
    while session.phase in (SessionPhase.WAITING, SessionPhase.PLAYING):
        now = time.monotonic()
        session.frame(now - last, now)
        last = now
        await asyncio.sleep(interval)


async def main(argv=None):
    args = parse_args(argv)
    directory = RoomDirectoryClient(args.url)
    await directory.connect_with_backoff()

    try:
        if args.list:
            rooms = await directory.list_rooms()
            if not rooms:
                print("No open rooms")
            for room in rooms:
                print(f"  {room.code}  {room.occupancy}/{room.capacity}")
            return

        session = GameSession.create(directory, lambda initiator: AiortcTransport(initiator))
        session.on_rendezvous_lost = lambda reason: print(
            f"Rendezvous service gone ({reason}); running game continues, nobody new can join")
        try:
            if args.create:
                code = await session.host_room()
                print(f"Room code: {code}")
                await asyncio.sleep(args.start_after)
                session.start_game()
                await session.start_host_loop()
            else:
                await session.join_room(args.join)
                await run_client_frames(session)
        finally:
            await session.teardown()
    except HordeLinkError as e:
        print(f"Error: {e}")
    finally:
        await directory.close()


def cli():
    print("=" * 50)
    print("  HORDELINK - P2P Session")
    print("=" * 50)
    asyncio.run(main())


if __name__ == "__main__":
    cli()
