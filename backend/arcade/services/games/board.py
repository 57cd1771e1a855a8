from typing import List, Optional

BOARD_SIZE = 9
SYMBOLS = ('X', 'O')

WINNING_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
)


def empty_board() -> List[Optional[str]]:
    return [None] * BOARD_SIZE


def is_valid_cell(index) -> bool:
    # bool is an int subclass; True/False are not cell indexes
    return isinstance(index, int) and not isinstance(index, bool) and 0 <= index < BOARD_SIZE


def is_winner(board, symbol) -> bool:
    """Whether ``symbol`` holds three in a row on any of the 8 lines."""
    return any(all(board[i] == symbol for i in line) for line in WINNING_LINES)


def is_full(board) -> bool:
    return all(cell is not None for cell in board)


def other_symbol(symbol: str) -> str:
    return 'O' if symbol == 'X' else 'X'
