#!/usr/bin/env python3
"""
Palm Pay – command-line front end.

Usage
-----
    python main.py scan                       [OPTIONS]
    python main.py checkout --item NAME:PRICE[:QTY] ... [--code CODE] [OPTIONS]
    python main.py topup --amount N [--code CODE] [OPTIONS]
    python main.py enroll [--code CODE]       [OPTIONS]
    python main.py login --phone P --password W

Without ``--code`` the palm code is obtained by scanning.

Common options
--------------
    --resolution WxH     Camera resolution (default: 1280x720)
    --camera-index INT   OpenCV camera index (default: 0)
    --no-flip            Disable horizontal mirror
    --timed              Countdown scan instead of the quality-gated scan
    --headless           No window; capture as soon as quality allows
    --registry PATH      Palm registry file (env PALM_PAY_REGISTRY)
    --api-url URL        Ledger service root (env PALM_PAY_API_URL)

Keyboard shortcuts (scanner window)
-----------------------------------
    SPACE    – scan palm (once quality reaches 80 %)
    r        – retry camera access after a denial
    q / ESC  – cancel
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Optional

# Must be set before cv2 is imported so Qt5 uses X11/XWayland instead of
# looking for a Wayland plugin that is not bundled with pip-installed opencv.
os.environ.setdefault("QT_QPA_PLATFORM", "xcb")

import cv2

from palm_pay.camera import CaptureDevice, PermissionState
from palm_pay.checkout import AuthMethod, Cart, CheckoutAuthorizer, CheckoutRejected
from palm_pay.enrollment import enroll_palm
from palm_pay.ledger import ENV_API_URL, DEFAULT_BASE_URL, LedgerClient, LedgerError
from palm_pay.registry import JsonFileRegistryStore, PalmRegistry
from palm_pay.session import CaptureSession, GatedPolicy, TimedPolicy
from palm_pay.visualizer import Visualizer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("palm_pay")

WINDOW = "Palm Scanner"
HEADLESS_FPS = 30


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--resolution", default="1280x720",
                        help="Camera resolution, e.g. 1280x720")
    common.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    common.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    common.add_argument("--timed", action="store_true",
                        help="Countdown scan (no quality gate, no registry lookup)")
    common.add_argument("--headless", action="store_true",
                        help="No display window; capture as soon as quality allows")
    common.add_argument("--registry", default=None,
                        help="Palm registry JSON file")
    common.add_argument("--api-url", default=os.environ.get(ENV_API_URL, DEFAULT_BASE_URL),
                        help="Ledger service root URL")

    parser = argparse.ArgumentParser(
        description="Palm-code payments from the command line",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("scan", parents=[common], help="Scan a palm and print its code")

    p = sub.add_parser("checkout", parents=[common], help="Pay for items with a palm code")
    p.add_argument("--item", action="append", required=True, metavar="NAME:PRICE[:QTY]",
                   help="Cart line; repeat for several items")
    p.add_argument("--code", default=None, help="Palm code (manual entry)")

    p = sub.add_parser("topup", parents=[common], help="Top up the wallet")
    p.add_argument("--amount", required=True, help="Amount, 1 to 1000")
    p.add_argument("--code", default=None, help="Palm code (manual entry)")

    p = sub.add_parser("enroll", parents=[common], help="Bind a palm code to your profile")
    p.add_argument("--code", default=None, help="Palm code (manual entry)")

    p = sub.add_parser("login", parents=[common], help="Sign in and print a session token")
    p.add_argument("--phone", required=True)
    p.add_argument("--password", required=True)

    return parser.parse_args(argv)


def parse_item(text: str) -> tuple[str, str, int]:
    parts = text.rsplit(":", 2)
    if len(parts) == 2:
        return parts[0], parts[1], 1
    if len(parts) == 3:
        return parts[0], parts[1], int(parts[2])
    raise ValueError(f"Invalid item {text!r}; use NAME:PRICE[:QTY]")


def build_session(args: argparse.Namespace) -> CaptureSession:
    res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    device = CaptureDevice(
        camera_index=args.camera_index,
        resolution=(res_w, res_h),
        flip_horizontal=not args.no_flip,
    )
    if args.timed:
        policy = TimedPolicy()
    else:
        policy = GatedPolicy(registry=PalmRegistry(JsonFileRegistryStore(args.registry)))
    return CaptureSession(device, policy)


# ---------------------------------------------------------------------------
# Scanner loop
# ---------------------------------------------------------------------------

def drive_session(session: CaptureSession, headless: bool, vis: Visualizer) -> Optional[str]:
    """Run an already-opened session until it completes or is cancelled."""
    if not headless:
        cv2.namedWindow(WINDOW, cv2.WINDOW_NORMAL)

    frame_idx = 0
    try:
        while not session.stopped:
            frame = session.tick()
            if session.stopped:
                break
            view = session.view()

            if headless:
                if view.permission in (PermissionState.DENIED, PermissionState.UNAVAILABLE):
                    logger.error("%s", view.error_message)
                    break
                if session.can_capture():
                    session.capture()
                if frame_idx % HEADLESS_FPS == 0:
                    print(f"progress={view.progress}% detected={view.detected} "
                          f"quality={view.quality.value}")
                time.sleep(1.0 / HEADLESS_FPS)
            else:
                shown = vis.draw(frame.copy(), view) if frame is not None else vis.message_panel(view)
                cv2.imshow(WINDOW, shown)
                key = cv2.waitKey(1) & 0xFF
                if key in (ord("q"), 27):
                    logger.info("Scan cancelled by user.")
                    break
                elif key == ord(" "):
                    attempt = session.capture()
                    if not attempt.accepted:
                        logger.warning("%s", attempt.message)
                elif key == ord("r") and view.permission is not PermissionState.GRANTED:
                    session.retry()
            frame_idx += 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        session.close()
        if not headless:
            cv2.destroyAllWindows()
    return session.result


def scan_code(args: argparse.Namespace) -> Optional[str]:
    session = build_session(args)
    session.open()
    return drive_session(session, args.headless, Visualizer())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    if args.command == "scan":
        code = scan_code(args)
        if code is None:
            return 1
        print(code)
        return 0

    with LedgerClient.from_env(args.api_url) as ledger:

        if args.command == "login":
            auth = ledger.login(args.phone, args.password)
            print(auth.token)
            return 0

        if args.command == "enroll":
            code = args.code or scan_code(args)
            result = enroll_palm(ledger, code)
            print(result.message)
            return 0 if result.ok else 1

        authorizer = CheckoutAuthorizer(ledger)
        if args.command == "checkout":
            cart = Cart()
            for line in args.item:
                name, price, qty = parse_item(line)
                cart.add(name, price, qty)
            if args.code:
                attempt = authorizer.submit_order(cart, args.code)
            else:
                session = build_session(args)
                authorizer.scan_for_order(session, cart)
                drive_session(session, args.headless, Visualizer())
                attempt = authorizer.last_attempt
        else:
            if args.code:
                authorizer.select_method(AuthMethod.MANUAL)
                attempt = authorizer.submit_topup(args.amount, args.code)
            else:
                session = build_session(args)
                authorizer.scan_for_topup(session, args.amount)
                drive_session(session, args.headless, Visualizer())
                attempt = authorizer.last_attempt

        if attempt is None:
            print(authorizer.last_rejection or "No palm code was captured.")
            return 1
        print(attempt.notice)
        if attempt.confirmation is not None:
            c = attempt.confirmation
            print(f"order={c.order_id} amount={c.amount} items={c.items}")
        if attempt.payment_url:
            print(f"Complete the payment at {attempt.payment_url}")
        return 0 if attempt.approved else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return run(args)
    except CheckoutRejected as exc:
        print(str(exc))
        return 1
    except (LedgerError, ValueError) as exc:
        logger.error("%s", exc)
        return 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
