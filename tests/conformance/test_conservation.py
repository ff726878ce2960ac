"""
Conservation Conformance Tests

INVARIANT: Balances are conserved and never negative.

    ∀ asset a:
        Σ_accounts balance(account, a) = 0          (house included)
    ∀ user u, asset a:
        balance(u, a) >= 0

Every ledger change is mirrored by the house account, so the first property
holds after any sequence of opens, price moves, evaluations and settlements.
The second holds because every debit is checked against the spendable balance.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from settlement import HOUSE_ACCOUNT, InsufficientFunds, ManualClock, MemoryStore

from tests.support import START, fund, make_engine

USERS = ("alice", "bob")

stake = st.integers(min_value=10, max_value=40000)

operation = st.one_of(
    st.tuples(st.just("binary"), st.sampled_from(USERS), stake,
              st.sampled_from(["up", "down"]), st.sampled_from([30, 60, 120, 300])),
    st.tuples(st.just("futures"), st.sampled_from(USERS), stake,
              st.sampled_from(["long", "short"]), st.integers(min_value=1, max_value=125)),
    st.tuples(st.just("cycle"), st.sampled_from(USERS), st.integers(min_value=1000, max_value=60000)),
    st.tuples(st.just("lend"), st.sampled_from(USERS), stake, st.sampled_from([7, 30])),
    st.tuples(st.just("borrow"), st.sampled_from(USERS),
              st.decimals(min_value=Decimal("0.05"), max_value=Decimal("0.9"), places=2)),
    st.tuples(st.just("tick"), st.integers(min_value=1, max_value=50)),
    st.tuples(st.just("wait"), st.integers(min_value=1, max_value=3 * 86400)),
    st.tuples(st.just("close_all")),
)


def apply_operation(engine, clock, op):
    kind = op[0]
    try:
        if kind == "binary":
            _, user, amount, side, duration = op
            engine.open_binary(user, "BTC/USDT", amount, side, duration=duration)
        elif kind == "futures":
            _, user, amount, side, leverage = op
            engine.open_futures(user, "ETH/USDT", amount, side, leverage)
        elif kind == "cycle":
            _, user, amount = op
            engine.open_cycle(user, amount)
        elif kind == "lend":
            _, user, amount, term = op
            engine.open_lend(user, amount, term)
        elif kind == "borrow":
            _, user, fraction = op
            principal = (Decimal("0.5") * engine.prices.current_price("BTC") * Decimal("0.65") * fraction)
            engine.open_borrow(user, Decimal("0.5"), principal.quantize(Decimal("0.01")), 7)
        elif kind == "tick":
            for _ in range(op[1]):
                engine.prices.tick_all()
        elif kind == "wait":
            clock.advance(seconds=op[1])
        elif kind == "close_all":
            for position in engine.list_open_positions():
                if position.kind.value == "futures":
                    engine.close_futures(position.position_id)
    except InsufficientFunds:
        pass
    engine.evaluate()


def assert_conserved(engine):
    result = engine.ledger.verify_conservation()
    assert result['valid'], result['discrepancies']
    for user in engine.ledger.users():
        for asset, amount in engine.ledger.balances(user).items():
            assert amount >= 0, f"{user} holds {amount} {asset}"


class TestConservationProperties:
    """Property-based conservation tests."""

    @given(st.lists(operation, min_size=1, max_size=25), st.integers(min_value=0, max_value=1000))
    @settings(max_examples=40, deadline=None)
    def test_any_sequence_conserves(self, operations, seed):
        """
        PROPERTY: After every step each asset nets to zero and no user is negative.
        """
        clock = ManualClock(START)
        engine = make_engine(store=MemoryStore(), clock=clock, seed=seed)
        for user in USERS:
            fund(engine, user)
        for op in operations:
            apply_operation(engine, clock, op)
            assert_conserved(engine)

        clock.advance(days=31)
        engine.evaluate()
        assert_conserved(engine)

    @given(st.lists(st.integers(min_value=10, max_value=5000), min_size=1, max_size=10))
    @settings(max_examples=30, deadline=None)
    def test_house_mirrors_users(self, stakes):
        """
        PROPERTY: The house balance is exactly minus the users' total.
        """
        clock = ManualClock(START)
        engine = make_engine(store=MemoryStore(), clock=clock)
        fund(engine, "alice", btc=None)
        for amount in stakes:
            try:
                engine.open_binary("alice", "BTC/USDT", amount, "up", duration=30)
            except InsufficientFunds:
                pass
        clock.advance(seconds=30)
        engine.evaluate()

        users_total = sum((engine.ledger.get_balance(u, "USDT") for u in engine.ledger.users()), Decimal("0"))
        assert engine.ledger.get_balance(HOUSE_ACCOUNT, "USDT") == -users_total


class TestConservationExamples:

    def test_binary_win_funded_by_house(self, funded_engine, clock):
        engine = funded_engine
        engine.open_binary("alice", "BTC/USDT", 1000, "up", duration=60)
        engine.prices.set_price("BTC/USDT", "95000")
        clock.advance(seconds=60)
        engine.evaluate()
        assert engine.ledger.get_balance(HOUSE_ACCOUNT, "USDT") == Decimal("-200850.00")
        assert engine.ledger.total("USDT") == Decimal("0")

    def test_borrow_moves_two_assets(self, funded_engine):
        engine = funded_engine
        engine.open_borrow("alice", collateral=1, principal=10000, term_days=14)
        assert engine.ledger.total("USDT") == Decimal("0")
        assert engine.ledger.total("BTC") == Decimal("0")
        assert engine.ledger.get_balance(HOUSE_ACCOUNT, "BTC") == Decimal("-3")
