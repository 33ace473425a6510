import secrets
import string


class TrueRNG:
    """
    A wrapper around Python's `secrets` module to provide cryptographically strong
    random numbers for coin results and room codes.
    """

    ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits

    @staticmethod
    def random_int(min_val: int, max_val: int) -> int:
        """Returns a random integer in the range [min_val, max_val] (inclusive)."""
        if min_val > max_val:
            raise ValueError("min_val must be less than or equal to max_val")
        return min_val + secrets.randbelow(max_val - min_val + 1)

    @staticmethod
    def random_choice(options: list):
        """Returns a random element from a non-empty sequence."""
        if not options:
            raise IndexError("Cannot choose from an empty sequence")
        return secrets.choice(options)

    def flip_coin(self) -> str:
        """Returns "heads" or "tails" with equal probability."""
        return "heads" if secrets.randbelow(2) == 0 else "tails"

    def room_code(self, length: int = 6) -> str:
        """Returns an uppercase alphanumeric code."""
        return "".join(secrets.choice(self.ROOM_CODE_ALPHABET) for _ in range(length))

    @staticmethod
    def token(nbytes: int = 8) -> str:
        return secrets.token_hex(nbytes)


rng = TrueRNG()
