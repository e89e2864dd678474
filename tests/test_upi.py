from decimal import Decimal

import pytest

from stablepay.schemas import QrType, UpiQrData
from stablepay.upi import (
    ERR_AM_NUMBER,
    ERR_AM_POSITIVE,
    ERR_CU_FORMAT,
    ERR_CU_REQUIRED,
    ERR_EMPTY,
    ERR_FORMAT,
    ERR_MC_NUMERIC,
    ERR_PA_FORMAT,
    ERR_PA_MANDATORY,
    build_upi_uri,
    classify_qr_type,
    format_qr_data_for_display,
    generate_upi_qr_data,
    parse_amount,
    parse_and_validate_qr,
    parse_upi_uri,
    validate_upi_data,
)


def test_dynamic_merchant_qr_is_valid():
    result = parse_and_validate_qr("upi://pay?pa=merchant@bank&pn=Test%20Store&am=850.00&cu=INR&mc=1234&tr=TXN1")

    assert result.is_valid is True
    assert result.qr_type == QrType.DYNAMIC_MERCHANT
    assert result.errors is None
    assert result.data.amount == "850.00"
    assert result.data.payee_name == "Test Store"
    assert result.data.transaction_ref == "TXN1"


def test_lowercase_currency_is_rejected():
    result = parse_and_validate_qr("upi://pay?pa=merchant@bank&am=10&cu=inr")

    assert result.is_valid is False
    assert result.errors == [ERR_CU_FORMAT]
    assert "3 uppercase letters" in result.errors[0]


def test_empty_input():
    for raw in ("", "   ", "\n\t"):
        result = parse_and_validate_qr(raw)
        assert result.is_valid is False
        assert result.qr_type == QrType.PERSONAL
        assert result.data.payee_address == ""
        assert result.errors == [ERR_EMPTY]


def test_wrong_scheme():
    result = parse_and_validate_qr("https://pay?pa=merchant@bank")

    assert result.is_valid is False
    assert result.qr_type == QrType.PERSONAL
    assert result.errors == [ERR_FORMAT]
    assert 'Must start with "upi://pay?"' in result.errors[0]


def test_all_violations_are_collected_in_order():
    result = parse_and_validate_qr("upi://pay?pa=notavpa&am=abc&mc=12a")

    assert result.errors == [ERR_CU_REQUIRED, ERR_MC_NUMERIC, ERR_AM_NUMBER, ERR_PA_FORMAT]


def test_missing_payee_and_negative_amount():
    result = parse_and_validate_qr("upi://pay?am=-5&cu=INR")

    assert result.data.payee_address == ""
    assert result.errors == [ERR_PA_MANDATORY, ERR_AM_POSITIVE]


@pytest.mark.parametrize("amount", ["0", "0.00", "-1"])
def test_non_positive_amounts(amount):
    validation = validate_upi_data(UpiQrData(pa="a@b", am=amount, cu="INR"))
    assert validation.errors == [ERR_AM_POSITIVE]


@pytest.mark.parametrize("amount", ["NaN", "Infinity", "1_000", "12,5", "abc"])
def test_non_numeric_amounts(amount):
    validation = validate_upi_data(UpiQrData(pa="a@b", am=amount, cu="INR"))
    assert validation.errors == [ERR_AM_NUMBER]


@pytest.mark.parametrize("mc", ["12 4", "١٢٣", "5411\n"])
def test_merchant_code_must_be_ascii_digits(mc):
    validation = validate_upi_data(UpiQrData(pa="a@b", mc=mc))
    assert ERR_MC_NUMERIC in validation.errors


@pytest.mark.parametrize(
    "fields, expected",
    [
        ({}, QrType.PERSONAL),
        ({"pn": "Friend"}, QrType.PERSONAL),
        ({"mc": "5411"}, QrType.STATIC_MERCHANT),
        ({"mc": "5411", "am": "10", "cu": "INR"}, QrType.DYNAMIC_MERCHANT),
        # merchant code with an amount but no currency falls back to static
        ({"mc": "5411", "am": "10"}, QrType.STATIC_MERCHANT),
        ({"am": "10", "cu": "INR"}, QrType.PERSONAL),
        ({"am": "10"}, QrType.PERSONAL),
        ({"mc": "", "am": ""}, QrType.PERSONAL),
    ],
)
def test_classification_table(fields, expected):
    assert classify_qr_type(UpiQrData(pa="a@b", **fields)) == expected


def test_unknown_keys_are_kept_in_order():
    data = parse_upi_uri("upi://pay?pa=a@b&zeta=1&alpha=2&mode=02")

    assert data.mode == "02"
    assert list(data.extras.items()) == [("zeta", "1"), ("alpha", "2")]


def test_first_duplicate_key_wins():
    data = parse_upi_uri("upi://pay?pa=first@bank&pa=second@bank")
    assert data.payee_address == "first@bank"


def test_surrounding_whitespace_is_trimmed():
    data = parse_upi_uri("  upi://pay?pa=a@b&pn=Shop  ")
    assert data.payee_address == "a@b"
    assert data.payee_name == "Shop"


def test_invalid_percent_encoding_does_not_raise():
    data = parse_upi_uri("upi://pay?pa=a@b&pn=%E0%A4")
    assert data is not None
    assert data.payee_address == "a@b"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        123,
        "upi://pay?",
        "upi://pay?&&&==",
        "upi://pay?pa=%ZZ&am=%",
        "upi://pay?=&=&am=1e999999",
        "upi://pay?" + "a" * 5000,
        "%%%%",
        "upi://PAY?pa=a@b",
        "\x00\x01upi://pay?pa=\x00",
    ],
)
def test_parse_and_validate_never_raises(raw):
    result = parse_and_validate_qr(raw)
    assert isinstance(result.is_valid, bool)
    assert result.is_valid is False or result.errors is None


@pytest.mark.parametrize(
    "name, note",
    [
        ("Corner Shop", "Groceries"),
        ("M&S Foods", "a=b"),
        ("A+B Traders", "100%41 off"),
        ("50% Off Store", "%zz & more"),
        ("Café Mañana", "चाय की दुकान"),
    ],
)
def test_build_then_parse_round_trip(name, note):
    original = UpiQrData(
        pa="shop@okaxis",
        pn=name,
        am="99.50",
        cu="INR",
        mc="5411",
        tr="TXN_1",
        extras={"tn": note, "k&y=": "v+w"},
    )

    assert parse_upi_uri(build_upi_uri(original)).model_dump() == original.model_dump()


def test_build_escapes_query_syntax_twice():
    uri = build_upi_uri(UpiQrData(pa="shop@bank", pn="M&S Foods", cu="INR"))

    assert uri == "upi://pay?pa=shop@bank&pn=M%2526S%20Foods&cu=INR"
    assert parse_upi_uri(uri).payee_name == "M&S Foods"
    assert parse_upi_uri(uri).extras == {}


@pytest.mark.parametrize(
    "value, expected",
    [("10", Decimal("10")), (" 2.50 ", Decimal("2.50")), ("", None), (None, None), ("inf", None), ("1_0", None)],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_generate_merchant_payload():
    payload = generate_upi_qr_data("shop@okaxis", "Corner Shop", amount=Decimal("99.5"), merchant_code="5411")
    result = parse_and_validate_qr(payload)

    assert result.is_valid is True
    assert result.qr_type == QrType.DYNAMIC_MERCHANT
    assert result.data.amount == "99.50"
    assert result.data.currency_code == "INR"
    assert result.data.transaction_ref.startswith("TXN_")


def test_generate_payload_without_amount():
    static = parse_and_validate_qr(generate_upi_qr_data("shop@okaxis", "Shop", merchant_code="5411"))
    personal = parse_and_validate_qr(generate_upi_qr_data("friend@oksbi", "Friend"))

    assert static.qr_type == QrType.STATIC_MERCHANT
    assert static.data.amount is None
    assert personal.qr_type == QrType.PERSONAL


def test_generated_references_are_unique():
    first = parse_upi_uri(generate_upi_qr_data("a@b", "A")).transaction_ref
    second = parse_upi_uri(generate_upi_qr_data("a@b", "A")).transaction_ref
    assert first != second


def test_format_for_display(dynamic_qr):
    text = format_qr_data_for_display(dynamic_qr)

    assert text.startswith("QR Type: DYNAMIC MERCHANT\nValid: Yes\n")
    assert "- Payee Address (pa): shop@okaxis" in text
    assert "- Amount (am): 250.00" in text
    assert "Errors:" not in text


def test_format_invalid_for_display():
    text = format_qr_data_for_display(parse_and_validate_qr("upi://pay?am=1&pn=X&foo=bar"))

    assert "Valid: No" in text
    assert f"- {ERR_PA_MANDATORY}" in text
    assert "- Payee Address (pa): Not provided" in text
    assert "Additional Parameters:\n- foo: bar" in text
