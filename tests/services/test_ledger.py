# tests/services/test_ledger.py
"""
Tests for PositionLedger and the weighted-average costing helpers.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from portfolio_tracker.models import AssetClass, Base, Operation, OperationType, Portfolio, Position
from portfolio_tracker.schemas.ledger import BuyRequest, PortfolioCreate, PortfolioUpdate, SellRequest
from portfolio_tracker.services.exceptions import (
    InsufficientQuantityError,
    PortfolioNotFoundError,
    PositionNotFoundError,
    ValidationError,
)
from portfolio_tracker.services.ledger import PositionLedger
from portfolio_tracker.services.ledger.costing import apply_buy, apply_sell, weighted_average
from tests.conftest import create_portfolio


@pytest.fixture
def ledger() -> PositionLedger:
    return PositionLedger()


def buy(symbol: str, quantity, price, asset_class=AssetClass.CRYPTO, **extra) -> BuyRequest:
    return BuyRequest(
        symbol=symbol,
        name=extra.pop("name", symbol),
        asset_class=asset_class,
        quantity=Decimal(str(quantity)),
        price_usd=Decimal(str(price)) if price is not None else None,
        **extra,
    )


def sell(symbol: str, quantity, price) -> SellRequest:
    return SellRequest(symbol=symbol, quantity=Decimal(str(quantity)), price_usd=Decimal(str(price)))


def operation_count(db) -> int:
    return db.scalar(select(func.count(Operation.id)))


# =============================================================================
# COSTING
# =============================================================================

class TestCosting:
    def test_weighted_average(self):
        assert weighted_average(Decimal("1"), Decimal("100"), Decimal("1"), Decimal("200")) == Decimal("150")

    def test_weighted_average_is_order_independent(self):
        a = apply_buy(Decimal("0"), Decimal("0"), None, None, Decimal("1"), Decimal("100"))
        a = apply_buy(a.quantity, a.avg_cost_usd, None, None, Decimal("3"), Decimal("200"))
        b = apply_buy(Decimal("0"), Decimal("0"), None, None, Decimal("3"), Decimal("200"))
        b = apply_buy(b.quantity, b.avg_cost_usd, None, None, Decimal("1"), Decimal("100"))

        assert a.avg_cost_usd == b.avg_cost_usd == Decimal("175")

    def test_missing_local_price_keeps_local_average(self):
        outcome = apply_buy(
            Decimal("2"), Decimal("10"), Decimal("10000"), Decimal("1000"),
            Decimal("2"), Decimal("12"),
        )

        assert outcome.avg_cost_usd == Decimal("11")
        assert outcome.avg_cost_local == Decimal("10000")
        assert outcome.avg_fx_rate == Decimal("1000")

    def test_sell_outcome(self):
        outcome = apply_sell(Decimal("2"), Decimal("150"), Decimal("1"), Decimal("250"))

        assert outcome.remaining_quantity == Decimal("1")
        assert outcome.cost_basis_sold == Decimal("150")
        assert outcome.proceeds == Decimal("250")
        assert outcome.realized_gain == Decimal("100")
        assert outcome.realized_gain_pct == Decimal("100") / Decimal("150") * 100
        assert outcome.closes_position is False

    def test_remaining_dust_closes(self):
        outcome = apply_sell(Decimal("1"), Decimal("10"), Decimal("0.999999995"), Decimal("10"))

        assert outcome.closes_position is True


# =============================================================================
# PORTFOLIOS
# =============================================================================

class TestPortfolios:
    def test_create_and_get(self, db, ledger):
        created = ledger.create_portfolio(db, PortfolioCreate(name="  Main  ", initial_capital=Decimal("1000")))

        fetched = ledger.get_portfolio(db, created.id)

        assert fetched.name == "Main"
        assert fetched.initial_capital == Decimal("1000")
        assert fetched.realized_gains == Decimal("0")

    def test_get_missing(self, db, ledger):
        with pytest.raises(PortfolioNotFoundError):
            ledger.get_portfolio(db, 999)

    def test_update_only_descriptive_fields(self, db, ledger):
        portfolio = create_portfolio(db)

        updated = ledger.update_portfolio(db, portfolio.id, PortfolioUpdate(description="long term"))

        assert updated.name == "Main"
        assert updated.description == "long term"

    def test_list_in_creation_order(self, db, ledger):
        create_portfolio(db, "A")
        create_portfolio(db, "B")

        assert [p.name for p in ledger.list_portfolios(db)] == ["A", "B"]

    def test_delete_cascades(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 100))

        ledger.delete_portfolio(db, sample_portfolio.id)

        assert db.get(Portfolio, sample_portfolio.id) is None
        assert db.scalar(select(func.count(Position.id))) == 0
        assert operation_count(db) == 0


# =============================================================================
# BUYS
# =============================================================================

class TestBuy:
    def test_first_buy_creates_position(self, db, ledger, sample_portfolio):
        position = ledger.buy(db, sample_portfolio.id, buy("btc", "0.5", 40000, name="Bitcoin"))

        assert position.symbol == "BTC"
        assert position.name == "Bitcoin"
        assert position.quantity == Decimal("0.5")
        assert position.avg_cost_usd == Decimal("40000")

        [operation] = ledger.list_operations(db, sample_portfolio.id)
        assert operation.operation_type == OperationType.BUY
        assert operation.position_id == position.id
        assert operation.amount_usd == Decimal("20000")

    def test_second_buy_averages(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 100))
        position = ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 200))

        assert position.quantity == Decimal("2")
        assert position.avg_cost_usd == Decimal("150")
        assert len(ledger.list_positions(db, sample_portfolio.id)) == 1

    def test_local_price_buy_derives_usd(self, db, ledger, sample_portfolio):
        request = BuyRequest(
            symbol="GGAL",
            name="Grupo Galicia",
            asset_class=AssetClass.LISTED_EQUITY,
            quantity=Decimal("10"),
            price_local=Decimal("5000"),
            fx_rate=Decimal("1000"),
        )

        position = ledger.buy(db, sample_portfolio.id, request)

        assert position.avg_cost_usd == Decimal("5")
        assert position.avg_cost_local == Decimal("5000")
        assert position.avg_fx_rate == Decimal("1000")

    def test_asset_class_mismatch(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("SPY", 1, 500, asset_class=AssetClass.LISTED_EQUITY))

        with pytest.raises(ValidationError) as exc_info:
            ledger.buy(db, sample_portfolio.id, buy("SPY", 1, 500, asset_class=AssetClass.FUND))

        assert exc_info.value.field == "asset_class"

    def test_unknown_portfolio(self, db, ledger):
        with pytest.raises(PortfolioNotFoundError):
            ledger.buy(db, 42, buy("BTC", 1, 100))


class TestBuyRequestValidation:
    def test_crypto_requires_usd_price(self):
        with pytest.raises(PydanticValidationError):
            BuyRequest(symbol="BTC", name="Bitcoin", asset_class=AssetClass.CRYPTO,
                       quantity=Decimal("1"), price_local=Decimal("100"), fx_rate=Decimal("1000"))

    def test_local_price_needs_fx_rate(self):
        with pytest.raises(PydanticValidationError):
            BuyRequest(symbol="GGAL", name="Galicia", asset_class=AssetClass.LISTED_EQUITY,
                       quantity=Decimal("1"), price_usd=Decimal("5"), price_local=Decimal("5000"))

    @pytest.mark.parametrize("quantity", ["0", "-1"])
    def test_quantity_must_be_positive(self, quantity):
        with pytest.raises(PydanticValidationError):
            buy("BTC", quantity, 100)

    def test_symbol_pattern(self):
        with pytest.raises(PydanticValidationError):
            buy("BTC/USDT", 1, 100)


class TestSellRequestValidation:
    def test_price_required(self):
        with pytest.raises(PydanticValidationError):
            SellRequest(symbol="GGAL", quantity=Decimal("1"))

    def test_local_price_needs_fx_rate(self):
        with pytest.raises(PydanticValidationError):
            SellRequest(symbol="GGAL", quantity=Decimal("1"), price_local=Decimal("7200"))

    def test_usd_price_derived_from_local(self):
        request = SellRequest(symbol="ggal", quantity=Decimal("1"), price_local=Decimal("6000"), fx_rate=Decimal("1200"))

        assert request.symbol == "GGAL"
        assert request.effective_price_usd == Decimal("5")


# =============================================================================
# SELLS
# =============================================================================

class TestSell:
    def test_buy_buy_sell_example(self, db, ledger, sample_portfolio):
        """1@100 + 1@200 averages 150; selling 1@250 realizes 100."""
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 100))
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 200))

        result = ledger.sell(db, sample_portfolio.id, sell("BTC", 1, 250))

        assert result.realized_gain == Decimal("100")
        assert result.cost_basis_sold == Decimal("150")
        assert result.remaining_quantity == Decimal("1")
        assert result.position_closed is False
        position = ledger.find_position(db, sample_portfolio.id, "BTC")
        assert position.quantity == Decimal("1")
        assert position.avg_cost_usd == Decimal("150")
        assert ledger.get_portfolio(db, sample_portfolio.id).realized_gains == Decimal("100")

    def test_sell_at_loss(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("ETH", 2, 3000))

        result = ledger.sell(db, sample_portfolio.id, sell("ETH", 1, 2500))

        assert result.realized_gain == Decimal("-500")
        assert ledger.get_portfolio(db, sample_portfolio.id).realized_gains == Decimal("-500")

    def test_oversell_changes_nothing(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 100))
        before = operation_count(db)

        with pytest.raises(InsufficientQuantityError) as exc_info:
            ledger.sell(db, sample_portfolio.id, sell("BTC", "1.5", 200))

        assert exc_info.value.available == Decimal("1")
        db.expire_all()
        assert ledger.find_position(db, sample_portfolio.id, "BTC").quantity == Decimal("1")
        assert ledger.get_portfolio(db, sample_portfolio.id).realized_gains == Decimal("0")
        assert operation_count(db) == before

    def test_sell_unknown_symbol(self, db, ledger, sample_portfolio):
        with pytest.raises(PositionNotFoundError):
            ledger.sell(db, sample_portfolio.id, sell("DOGE", 1, 1))

    def test_closing_sell_deletes_position_and_keeps_history(self, db, ledger, sample_portfolio):
        position = ledger.buy(db, sample_portfolio.id, buy("SOL", 3, 20))
        position_id = position.id

        result = ledger.sell(db, sample_portfolio.id, sell("SOL", 3, 30))

        assert result.position_closed is True
        assert result.remaining_quantity == Decimal("0")
        assert db.get(Position, position_id) is None
        operations = ledger.list_operations(db, sample_portfolio.id)
        assert len(operations) == 2
        assert all(op.position_id is None for op in operations)
        assert {op.symbol for op in operations} == {"SOL"}
        assert {(op.asset_name, op.asset_class) for op in operations} == {("SOL", AssetClass.CRYPTO)}

    def test_listed_sell_at_local_price(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("GGAL", 10, 5, asset_class=AssetClass.LISTED_EQUITY))

        result = ledger.sell(db, sample_portfolio.id, SellRequest(
            symbol="GGAL", quantity=Decimal("4"), price_local=Decimal("7200"), fx_rate=Decimal("1200"),
        ))

        assert result.price_usd == Decimal("6")
        assert result.realized_gain == Decimal("4")
        assert result.operation.price_usd == Decimal("6")
        assert result.operation.price_local == Decimal("7200")
        assert result.operation.fx_rate == Decimal("1200")
        assert result.operation.amount_usd == Decimal("24")
        assert ledger.get_portfolio(db, sample_portfolio.id).realized_gains == Decimal("4")

    def test_crypto_sell_needs_usd_price(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("BTC", 1, 100))
        before = operation_count(db)

        with pytest.raises(ValidationError) as exc_info:
            ledger.sell(db, sample_portfolio.id, SellRequest(
                symbol="BTC", quantity=Decimal("1"), price_local=Decimal("150000"), fx_rate=Decimal("1000"),
            ))

        assert exc_info.value.field == "price_usd"
        assert ledger.find_position(db, sample_portfolio.id, "BTC").quantity == Decimal("1")
        assert operation_count(db) == before

    def test_symbol_can_be_bought_again_after_close(self, db, ledger, sample_portfolio):
        ledger.buy(db, sample_portfolio.id, buy("SOL", 1, 20))
        ledger.sell(db, sample_portfolio.id, sell("SOL", 1, 25))

        position = ledger.buy(db, sample_portfolio.id, buy("SOL", 2, 10))

        assert position.quantity == Decimal("2")
        assert position.avg_cost_usd == Decimal("10")


# =============================================================================
# CAPITAL
# =============================================================================

class TestCapital:
    def test_contribute(self, db, ledger, sample_portfolio):
        operation = ledger.contribute(db, sample_portfolio.id, Decimal("500"), note="bonus")

        assert operation.operation_type == OperationType.CONTRIBUTION
        assert operation.position_id is None
        assert ledger.get_portfolio(db, sample_portfolio.id).initial_capital == Decimal("1500")

    def test_withdraw(self, db, ledger, sample_portfolio):
        ledger.withdraw(db, sample_portfolio.id, Decimal("400"))

        assert ledger.get_portfolio(db, sample_portfolio.id).initial_capital == Decimal("600")

    def test_withdraw_more_than_capital(self, db, ledger, sample_portfolio):
        with pytest.raises(ValidationError) as exc_info:
            ledger.withdraw(db, sample_portfolio.id, Decimal("1000.01"))

        assert exc_info.value.field == "amount"
        assert ledger.get_portfolio(db, sample_portfolio.id).initial_capital == Decimal("1000")
        assert operation_count(db) == 0

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_non_positive_amounts(self, db, ledger, sample_portfolio, amount):
        with pytest.raises(ValidationError):
            ledger.contribute(db, sample_portfolio.id, amount)
        with pytest.raises(ValidationError):
            ledger.withdraw(db, sample_portfolio.id, amount)

    def test_operations_newest_first_with_limit(self, db, ledger, sample_portfolio):
        ledger.contribute(db, sample_portfolio.id, Decimal("1"))
        ledger.contribute(db, sample_portfolio.id, Decimal("2"))
        ledger.contribute(db, sample_portfolio.id, Decimal("3"))

        operations = ledger.list_operations(db, sample_portfolio.id, limit=2)

        assert [op.amount_usd for op in operations] == [Decimal("3"), Decimal("2")]


# =============================================================================
# CONCURRENT SESSIONS
# =============================================================================

class TestConcurrentSessions:
    """Each session holds the portfolio loaded before the other one writes."""

    @pytest.fixture
    def sessions(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
        Base.metadata.create_all(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        first, second = factory(), factory()
        yield first, second
        first.close()
        second.close()
        engine.dispose()

    def test_realized_gains_from_both_sessions_are_kept(self, ledger, sessions):
        first, second = sessions
        portfolio = create_portfolio(first)
        ledger.buy(first, portfolio.id, buy("BTC", 1, 100))
        ledger.buy(first, portfolio.id, buy("ETH", 2, 100))
        assert ledger.get_portfolio(second, portfolio.id).realized_gains == Decimal("0")

        ledger.sell(first, portfolio.id, sell("BTC", 1, 150))
        ledger.sell(second, portfolio.id, sell("ETH", 1, 200))

        first.expire_all()
        assert ledger.get_portfolio(first, portfolio.id).realized_gains == Decimal("150")

    def test_contributions_from_both_sessions_are_kept(self, ledger, sessions):
        first, second = sessions
        portfolio = create_portfolio(first, initial_capital=Decimal("1000"))
        assert ledger.get_portfolio(second, portfolio.id).initial_capital == Decimal("1000")

        ledger.contribute(first, portfolio.id, Decimal("500"))
        ledger.contribute(second, portfolio.id, Decimal("250"))

        first.expire_all()
        assert ledger.get_portfolio(first, portfolio.id).initial_capital == Decimal("1750")

    def test_withdrawal_checked_against_current_capital(self, ledger, sessions):
        first, second = sessions
        portfolio = create_portfolio(first, initial_capital=Decimal("1000"))
        assert ledger.get_portfolio(second, portfolio.id).initial_capital == Decimal("1000")

        ledger.withdraw(first, portfolio.id, Decimal("800"))
        with pytest.raises(ValidationError) as exc_info:
            ledger.withdraw(second, portfolio.id, Decimal("500"))

        assert "capital is 200" in str(exc_info.value)
        first.expire_all()
        assert ledger.get_portfolio(first, portfolio.id).initial_capital == Decimal("200")
        assert operation_count(first) == 1
