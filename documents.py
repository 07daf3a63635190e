import re

NON_DIGITS = re.compile(r'\D+')

CNPJ_FACTORS_ONE = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
CNPJ_FACTORS_TWO = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]


def sanitize_document(value):
    return NON_DIGITS.sub('', value) if isinstance(value, str) else ''


def _all_same(digits):
    return len(set(digits)) == 1


def is_valid_cpf(value):
    digits = sanitize_document(value)
    if len(digits) != 11 or _all_same(digits):
        return False

    numbers = [int(d) for d in digits]

    def verifier(length):
        total = sum(n * (length + 1 - i) for i, n in enumerate(numbers[:length]))
        mod = (total * 10) % 11
        return 0 if mod == 10 else mod

    return verifier(9) == numbers[9] and verifier(10) == numbers[10]


def is_valid_cnpj(value):
    digits = sanitize_document(value)
    if len(digits) != 14 or _all_same(digits):
        return False

    numbers = [int(d) for d in digits]

    def verifier(length, factors):
        mod = sum(n * f for n, f in zip(numbers[:length], factors)) % 11
        return 0 if mod < 2 else 11 - mod

    return (verifier(12, CNPJ_FACTORS_ONE) == numbers[12]
            and verifier(13, CNPJ_FACTORS_TWO) == numbers[13])
