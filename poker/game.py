from __future__ import annotations

import random
from typing import Dict, List, Optional, Tuple

from multiplayer.errors import ConflictError, NotYourTurn, ValidationError

from .cards import DECK_SIZE, build_deck, cards_to_labels, draw, parse_cards
from .evaluator import HandResult, evaluate_best_hand, determine_winners
from .models import DRAW, SEATS, MoveType, Phase, PlayerSeat, PlayerStatus, PokerState, TableConfig, other_seat

# PokerEngine is a pure reducer over PokerState. No networking lives here,
# only heads-up rules, chip accounting, and betting order.

Event = Dict[str, object]

STREET_CARDS = {Phase.PREFLOP: (Phase.FLOP, 3), Phase.FLOP: (Phase.TURN, 1), Phase.TURN: (Phase.RIVER, 1)}


class PokerEngine:
    """Heads-up No-Limit Texas Hold'em for a two-seat room."""

    def __init__(self, config: Optional[TableConfig] = None) -> None:
        self.config = config or TableConfig()

    def new_state(self) -> PokerState:
        return PokerState.initial(self.config)

    # Hand lifecycle --------------------------------------------------

    def start_hand(
        self,
        seed: Optional[int] = None,
        rng: Optional[random.Random] = None,
        dealer_button: int = 1,
        deck: Optional[List[str]] = None,
    ) -> Tuple[PokerState, List[Event]]:
        if dealer_button not in SEATS:
            raise ValidationError(f"Invalid dealer button: {dealer_button}")
        state = self.new_state()
        state.dealer_button = dealer_button
        state.deck = self._checked_deck(deck) if deck is not None else cards_to_labels(build_deck(seed, rng))

        events: List[Event] = []
        self._deal_hole_cards(state)
        events.append(self._post_blinds(state))
        state.phase = Phase.PREFLOP
        # The small blind (button) opens; the blinds count as the street's first action.
        state.current_turn = dealer_button
        state.street_actions = 1
        return state, events

    def _checked_deck(self, deck: List[str]) -> List[str]:
        try:
            labels = cards_to_labels(parse_cards(deck))
        except (AttributeError, ValueError) as exc:
            raise ValidationError(f"Invalid deck: {exc}") from exc
        if len(labels) != DECK_SIZE or len(set(labels)) != DECK_SIZE:
            raise ValidationError("Deck must hold 52 distinct cards")
        return labels

    def _deal_hole_cards(self, state: PokerState) -> None:
        # Fixed offsets: seat 1 takes deck[0] and deck[2], seat 2 takes deck[1] and deck[3].
        cards, state.deck_index = draw(state.deck, state.deck_index, 4)
        state.player(1).hole_cards = [cards[0], cards[2]]
        state.player(2).hole_cards = [cards[1], cards[3]]

    def _post_blinds(self, state: PokerState) -> Event:
        sb_seat = state.dealer_button
        bb_seat = other_seat(sb_seat)
        sb_player = state.player(sb_seat)
        bb_player = state.player(bb_seat)

        self._commit_chips(state, sb_player, self.config.sb)
        self._commit_chips(state, bb_player, self.config.bb)
        state.current_bet = max(sb_player.bet, bb_player.bet)
        return {
            "ev": "POST_BLINDS",
            "sb_seat": sb_seat,
            "bb_seat": bb_seat,
            "sb": sb_player.bet,
            "bb": bb_player.bet,
        }

    def _commit_chips(self, state: PokerState, player: PlayerSeat, amount: int) -> int:
        amount = max(0, min(amount, player.stack))
        player.stack -= amount
        player.bet += amount
        player.total_bet += amount
        state.pot += amount
        return amount

    # Action handling -------------------------------------------------

    def legal_moves(self, state: PokerState, seat: int) -> List[MoveType]:
        if not state.is_betting or state.current_turn != seat:
            return []
        player = state.player(seat)
        legal = [MoveType.FOLD]
        if player.bet >= state.current_bet:
            legal.append(MoveType.CHECK)
        elif player.stack > 0:
            legal.append(MoveType.CALL)
        if player.stack > state.current_bet - player.bet and state.opponent(seat).stack > 0:
            legal.append(MoveType.BET)
        return legal

    def call_amount(self, state: PokerState, seat: int) -> int:
        player = state.player(seat)
        return max(0, min(state.current_bet - player.bet, player.stack))

    def apply_move(
        self,
        state: PokerState,
        seat: int,
        move: MoveType,
        amount: Optional[int] = None,
    ) -> Tuple[PokerState, List[Event]]:
        """Return the state after `seat` plays `move`; the input state is left untouched."""
        if not state.is_betting:
            raise ConflictError("Hand not active")
        if seat not in SEATS:
            raise ValidationError(f"Invalid seat: {seat}")
        if seat != state.current_turn:
            raise NotYourTurn("Not your turn")
        try:
            move = MoveType(move)
        except ValueError as exc:
            raise ValidationError(f"Unsupported action {move}") from exc

        state = state.copy()
        player = state.player(seat)
        events: List[Event] = []

        # Each branch records what happened so peers can render it.
        if move == MoveType.FOLD:
            player.status = PlayerStatus.FOLDED
            events.append({"ev": "FOLD", "seat": seat})
            events.extend(self._award_uncontested(state, other_seat(seat)))
            return state, events

        if move == MoveType.CHECK:
            if state.current_bet > player.bet:
                raise ConflictError("Cannot check when facing a bet")
            events.append({"ev": "CHECK", "seat": seat})
        elif move == MoveType.CALL:
            if state.current_bet - player.bet <= 0:
                raise ConflictError("Nothing to call")
            committed = self._commit_chips(state, player, state.current_bet - player.bet)
            events.append({"ev": "CALL", "seat": seat, "amount": committed})
            events.extend(self._return_uncalled(state))
        else:
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError("Bet requires a positive amount")
            if player.stack == 0:
                raise ConflictError("No chips left to bet")
            if state.opponent(seat).stack == 0:
                raise ConflictError("Opponent is all-in")
            all_in = amount >= player.stack
            if player.bet + min(amount, player.stack) <= state.current_bet and not all_in:
                raise ConflictError("Bet must exceed the current bet")
            committed = self._commit_chips(state, player, amount)
            events.append({"ev": "BET", "seat": seat, "amount": committed, "all_in": player.stack == 0})
            if player.bet > state.current_bet:
                state.current_bet = player.bet
            else:
                # All-in for less than the bet faced behaves like a short call.
                events.extend(self._return_uncalled(state))

        state.street_actions += 1
        state.current_turn = other_seat(seat)
        if move != MoveType.BET or self._bets_equal(state):
            events.extend(self._maybe_advance_street(state))
        return state, events

    def _bets_equal(self, state: PokerState) -> bool:
        first, second = state.players
        return first.bet == second.bet

    def _return_uncalled(self, state: PokerState) -> List[Event]:
        # A short all-in leaves part of the other bet uncalled; that part goes back.
        first, second = state.players
        if first.bet == second.bet:
            return []
        high, low = (first, second) if first.bet > second.bet else (second, first)
        if low.stack > 0:
            return []
        excess = high.bet - low.bet
        high.bet -= excess
        high.total_bet -= excess
        high.stack += excess
        state.pot -= excess
        state.current_bet = high.bet
        return [{"ev": "RETURN_UNCALLED", "seat": high.seat, "amount": excess}]

    def _award_uncontested(self, state: PokerState, winner: int) -> List[Event]:
        amount = state.pot
        state.player(winner).stack += amount
        state.pot = 0
        state.phase = Phase.SHOWDOWN
        state.winner = winner
        for player in state.players:
            player.reset_for_round()
        state.current_bet = 0
        return [{"ev": "POT_AWARD", "seat": winner, "amount": amount}]

    def _maybe_advance_street(self, state: PokerState) -> List[Event]:
        if not self._bets_equal(state) or state.street_actions < 2:
            return []

        events: List[Event] = []
        while True:
            for player in state.players:
                player.reset_for_round()
            state.current_bet = 0
            state.street_actions = 0
            state.current_turn = state.non_dealer

            if state.phase == Phase.RIVER:
                state.phase = Phase.SHOWDOWN
                events.extend(self._resolve_showdown(state))
                return events

            next_phase, count = STREET_CARDS[state.phase]
            cards, state.deck_index = draw(state.deck, state.deck_index, count)
            state.community_cards.extend(cards)
            state.phase = next_phase
            events.append({"ev": next_phase.value.upper(), "cards": cards})

            # Nobody left to bet against: run the board out.
            if all(player.stack > 0 for player in state.players):
                return events

    def _resolve_showdown(self, state: PokerState) -> List[Event]:
        events: List[Event] = []
        board = parse_cards(state.community_cards)
        results: List[HandResult] = []
        for player in state.players:
            result = evaluate_best_hand(parse_cards(player.hole_cards), board)
            player.hand_label = result.label
            results.append(result)
            events.append(
                {
                    "ev": "SHOWDOWN",
                    "seat": player.seat,
                    "hand": list(player.hole_cards),
                    "board": list(state.community_cards),
                    "rank": result.rank.value,
                }
            )

        winners = [state.players[idx].seat for idx in determine_winners(results)]
        pot = state.pot
        if len(winners) == 1:
            state.player(winners[0]).stack += pot
            state.winner = winners[0]
            events.append({"ev": "POT_AWARD", "seat": winners[0], "amount": pot})
        else:
            # Split: the odd chip goes to seat 1.
            share, remainder = divmod(pot, len(winners))
            for idx, seat in enumerate(sorted(winners)):
                payout = share + (1 if idx < remainder else 0)
                state.player(seat).stack += payout
                events.append({"ev": "POT_AWARD", "seat": seat, "amount": payout})
            state.winner = DRAW
        state.pot = 0
        return events
