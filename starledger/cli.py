import argparse
import json
import logging
import os
import time

from .chain import Chain, ChainIntegrityError
from .registry import StarRegistry, VerificationError
from .rpc import RpcServer
from .wallet import Wallet


DEFAULT_DATA_DIR = os.getenv(
    "STARLEDGER_DATA_DIR", os.path.join(os.getcwd(), "starledger_data")
)
LOG_LEVEL = os.getenv("STARLEDGER_LOG_LEVEL", "INFO")


def _load_json(value: str):
    if os.path.exists(value):
        with open(value, "r", encoding="utf-8") as f:
            return json.load(f)
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Invalid JSON: {value}") from exc


def _open_chain(args: argparse.Namespace) -> Chain:
    try:
        return Chain(args.data_dir)
    except ChainIntegrityError as exc:
        raise SystemExit(f"Stored chain is corrupt: {exc}") from exc


def _resolve_address(args: argparse.Namespace) -> str:
    if getattr(args, "address", None):
        return args.address
    if getattr(args, "wallet", None):
        return Wallet.load(args.wallet).address
    raise SystemExit("Provide --address or --wallet")


def _submit(chain: Chain, address: str, message: str, signature: str, star) -> None:
    registry = StarRegistry(chain)
    try:
        block = registry.verify_and_submit(address, message, signature, star)
    except VerificationError as exc:
        raise SystemExit(f"Submission rejected ({type(exc).__name__}): {exc}") from exc
    except ChainIntegrityError as exc:
        raise SystemExit(f"Chain rejected block: {exc}") from exc
    print("Star registered")
    print("Height:", block.height)
    print("Block hash:", block.hash)


def cmd_init(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    genesis = chain.initialize()
    print("Chain ready")
    print("Height:", chain.height)
    print("Genesis hash:", genesis.hash)
    chain.close()


def cmd_create_wallet(args: argparse.Namespace) -> None:
    wallet = Wallet.create()
    path = args.wallet
    dir_name = os.path.dirname(path)
    if dir_name:
        os.makedirs(dir_name, exist_ok=True)
    wallet.save(path)
    print("Wallet created")
    print("Address:", wallet.address)


def cmd_address(args: argparse.Namespace) -> None:
    wallet = Wallet.load(args.wallet)
    print(wallet.address)


def cmd_challenge(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    try:
        print(StarRegistry(chain).issue_challenge(_resolve_address(args)))
    except VerificationError as exc:
        raise SystemExit(str(exc)) from exc
    finally:
        chain.close()


def cmd_sign(args: argparse.Namespace) -> None:
    wallet = Wallet.load(args.wallet)
    print(wallet.sign_message(args.message))


def cmd_submit(args: argparse.Namespace) -> None:
    wallet = Wallet.load(args.wallet)
    star = _load_json(args.star)
    chain = _open_chain(args)
    try:
        message = StarRegistry(chain).issue_challenge(wallet.address)
        _submit(chain, wallet.address, message, wallet.sign_message(message), star)
    finally:
        chain.close()


def cmd_submit_signed(args: argparse.Namespace) -> None:
    star = _load_json(args.star)
    chain = _open_chain(args)
    try:
        _submit(chain, args.address, args.message, args.signature, star)
    finally:
        chain.close()


def cmd_get_block(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    try:
        if args.hash:
            blocks = chain.get_blocks_by_hash(args.hash)
        else:
            block = chain.get_block_by_height(args.height)
            blocks = [block] if block else []
        if not blocks:
            raise SystemExit("Block not found")
        for block in blocks:
            print(json.dumps(block.to_dict(), indent=2))
    finally:
        chain.close()


def cmd_stars(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    try:
        stars = chain.get_data_by_owner(_resolve_address(args))
        print(json.dumps(stars, indent=2))
    finally:
        chain.close()


def cmd_height(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    print(chain.get_height())
    chain.close()


def cmd_validate(args: argparse.Namespace) -> None:
    # a corrupt store fails inside _open_chain with the full issue list
    chain = _open_chain(args)
    issues = chain.audit()
    chain.close()
    if issues:
        for issue in issues:
            print(issue)
        raise SystemExit(f"Chain invalid: {len(issues)} issue(s)")
    print("Chain valid")


def cmd_print_chain(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    print(json.dumps(chain.dump_chain(), indent=2))
    chain.close()


def cmd_serve(args: argparse.Namespace) -> None:
    chain = _open_chain(args)
    server = RpcServer(StarRegistry(chain), args.host, args.port)
    try:
        server.start()
    except RuntimeError as exc:
        chain.close()
        raise SystemExit(str(exc)) from exc
    host, port = server.address
    print(f"RPC listening on http://{host}:{port}/rpc")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
        chain.close()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="starledger", description="Star registry ledger")
    p.add_argument("--data-dir", default=DEFAULT_DATA_DIR)
    p.add_argument("--log-level", default=LOG_LEVEL)
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("init", help="create the genesis block")
    s.set_defaults(func=cmd_init)

    s = sub.add_parser("create-wallet")
    s.add_argument("--wallet", required=True)
    s.set_defaults(func=cmd_create_wallet)

    s = sub.add_parser("address")
    s.add_argument("--wallet", required=True)
    s.set_defaults(func=cmd_address)

    s = sub.add_parser("challenge", help="issue an ownership challenge message")
    s.add_argument("--address")
    s.add_argument("--wallet")
    s.set_defaults(func=cmd_challenge)

    s = sub.add_parser("sign")
    s.add_argument("--wallet", required=True)
    s.add_argument("--message", required=True)
    s.set_defaults(func=cmd_sign)

    s = sub.add_parser("submit", help="challenge, sign and submit a star in one step")
    s.add_argument("--wallet", required=True)
    s.add_argument("--star", required=True, help="JSON object or file path")
    s.set_defaults(func=cmd_submit)

    s = sub.add_parser("submit-signed")
    s.add_argument("--address", required=True)
    s.add_argument("--message", required=True)
    s.add_argument("--signature", required=True)
    s.add_argument("--star", required=True, help="JSON object or file path")
    s.set_defaults(func=cmd_submit_signed)

    s = sub.add_parser("get-block")
    group = s.add_mutually_exclusive_group(required=True)
    group.add_argument("--hash")
    group.add_argument("--height", type=int)
    s.set_defaults(func=cmd_get_block)

    s = sub.add_parser("stars")
    s.add_argument("--address")
    s.add_argument("--wallet")
    s.set_defaults(func=cmd_stars)

    s = sub.add_parser("height")
    s.set_defaults(func=cmd_height)

    s = sub.add_parser("validate")
    s.set_defaults(func=cmd_validate)

    s = sub.add_parser("print-chain")
    s.set_defaults(func=cmd_print_chain)

    s = sub.add_parser("serve", help="run the JSON RPC server")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=9334)
    s.set_defaults(func=cmd_serve)

    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
