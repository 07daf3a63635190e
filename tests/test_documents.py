import pytest

from documents import is_valid_cnpj, is_valid_cpf, sanitize_document


def test_sanitize_keeps_digits_only():
    assert sanitize_document('529.982.247-25') == '52998224725'
    assert sanitize_document('11.222.333/0001-81') == '11222333000181'
    assert sanitize_document(None) == ''


@pytest.mark.parametrize('cpf', ['52998224725', '529.982.247-25'])
def test_valid_cpf(cpf):
    assert is_valid_cpf(cpf)


@pytest.mark.parametrize('cpf', ['11111111111', '00000000000', '52998224724', '5299822472', ''])
def test_invalid_cpf(cpf):
    assert not is_valid_cpf(cpf)


@pytest.mark.parametrize('cnpj', ['11222333000181', '11.222.333/0001-81'])
def test_valid_cnpj(cnpj):
    assert is_valid_cnpj(cnpj)


@pytest.mark.parametrize('cnpj', ['11111111111111', '11222333000182', '1122233300018'])
def test_invalid_cnpj(cnpj):
    assert not is_valid_cnpj(cnpj)
