import pytest

from starledger.chain import AppendError
from starledger.registry import (
    PURPOSE_TAG,
    WINDOW_SECONDS,
    Expired,
    InvalidSignature,
    MalformedMessage,
    StarRegistry,
    parse_challenge,
)
from starledger.wallet import Wallet

STAR = {"dec": "68° 52' 56.9", "ra": "16h 29m 1.0s", "story": "Found star using https://www.google.com/sky/"}


def test_challenge_format(registry, wallet, clock):
    message = registry.issue_challenge(wallet.address)
    assert message == f"{wallet.address}:{clock.now}:{PURPOSE_TAG}"
    assert parse_challenge(message) == (wallet.address, clock.now)


@pytest.mark.parametrize("address", ["", "a:b"])
def test_challenge_rejects_bad_address(registry, address):
    with pytest.raises(MalformedMessage):
        registry.issue_challenge(address)


def test_submit_appends_owned_block(registry, chain, wallet):
    message = registry.issue_challenge(wallet.address)
    block = registry.verify_and_submit(wallet.address, message, wallet.sign_message(message), STAR)

    assert block.height == 1
    assert chain.height == 1
    assert block.get_data() == {"address": wallet.address, "star": STAR}
    assert registry.get_stars_by_owner(wallet.address) == [{"address": wallet.address, "star": STAR}]
    assert registry.get_blocks_by_hash(block.hash) == [block]
    assert registry.get_block_by_height(1) is block
    assert registry.get_height() == 1
    assert registry.validate_chain() == []


def test_window_boundary(registry, chain, wallet, clock):
    message = registry.issue_challenge(wallet.address)
    signature = wallet.sign_message(message)

    clock.advance(WINDOW_SECONDS - 1)
    assert registry.verify_and_submit(wallet.address, message, signature, STAR).height == 1

    clock.advance(1)
    with pytest.raises(Expired) as info:
        registry.verify_and_submit(wallet.address, message, signature, STAR)
    assert info.value.elapsed == WINDOW_SECONDS
    assert info.value.window == WINDOW_SECONDS
    assert chain.height == 1


def test_signature_from_other_key_is_rejected(registry, chain, wallet):
    intruder = Wallet.create()
    message = registry.issue_challenge(wallet.address)
    with pytest.raises(InvalidSignature) as info:
        registry.verify_and_submit(wallet.address, message, intruder.sign_message(message), STAR)
    assert info.value.address == wallet.address
    assert chain.height == 0


@pytest.mark.parametrize("signature", ["", "00:00", "not-a-signature", "1:2:3:4"])
def test_garbage_signature_is_rejected(registry, wallet, signature):
    message = registry.issue_challenge(wallet.address)
    with pytest.raises(InvalidSignature):
        registry.verify_and_submit(wallet.address, message, signature, STAR)


def test_signature_over_other_message_is_rejected(registry, wallet, clock):
    message = registry.issue_challenge(wallet.address)
    clock.advance(1)
    other = registry.issue_challenge(wallet.address)
    with pytest.raises(InvalidSignature):
        registry.verify_and_submit(wallet.address, message, wallet.sign_message(other), STAR)


@pytest.mark.parametrize(
    "template",
    [
        "{addr}",
        "{addr}:{now}",
        "{addr}:abc:starRegistry",
        "{addr}::starRegistry",
        "{addr}:-5:starRegistry",
        "{addr}:{now}:otherPurpose",
        "{addr}:{now}:starRegistry:extra",
        "someone-else:{now}:starRegistry",
        "{addr}:{future}:starRegistry",
    ],
)
def test_malformed_messages(registry, chain, wallet, clock, template):
    message = template.format(addr=wallet.address, now=clock.now, future=clock.now + 10)
    with pytest.raises(MalformedMessage):
        registry.verify_and_submit(wallet.address, message, wallet.sign_message(message), STAR)
    assert chain.height == 0


def test_pluggable_verifier(chain):
    calls = []

    def verifier(message, address, signature):
        calls.append((message, address, signature))
        return signature == "ok"

    registry = StarRegistry(chain, verifier=verifier)
    message = registry.issue_challenge("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2")
    block = registry.verify_and_submit("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", message, "ok", STAR)
    assert block.height == 1
    assert calls == [(message, "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", "ok")]

    with pytest.raises(InvalidSignature):
        registry.verify_and_submit("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", message, "bad", STAR)


def test_verifier_errors_count_as_invalid(chain):
    def verifier(message, address, signature):
        raise ValueError("cannot decode signature")

    registry = StarRegistry(chain, verifier=verifier)
    message = registry.issue_challenge("addr")
    with pytest.raises(InvalidSignature):
        registry.verify_and_submit("addr", message, "sig", STAR)


def test_append_failure_propagates(registry, chain, wallet):
    first = registry.issue_challenge(wallet.address)
    registry.verify_and_submit(wallet.address, first, wallet.sign_message(first), STAR)
    chain.blocks[1].body = chain.blocks[0].body

    message = registry.issue_challenge(wallet.address)
    with pytest.raises(AppendError):
        registry.verify_and_submit(wallet.address, message, wallet.sign_message(message), STAR)
    assert chain.height == 1
    assert len(registry.validate_chain()) == 1


def test_stars_by_owner_filters_other_wallets(registry, wallet):
    other = Wallet.create()
    for owner, story in [(wallet, "a1"), (other, "b1"), (wallet, "a2")]:
        message = registry.issue_challenge(owner.address)
        registry.verify_and_submit(owner.address, message, owner.sign_message(message), {"story": story})

    stars = registry.get_stars_by_owner(wallet.address)
    assert [s["star"]["story"] for s in stars] == ["a1", "a2"]
