"""
Tests for payload conversion.

Tests cover:
- Date and money parsing (ISO and Brazilian formats)
- Per-entity conversion into table rows
- Missing/unknown field handling
- ConversionError on invalid payloads
"""

from datetime import date, datetime

import pytest

from conftest import deputado_payload, despesa_payload, votacao_payload
from legis_sync.core.errors import ConversionError
from legis_sync.models import Deputado, Despesa, Proposicao, Votacao
from legis_sync.services.conversion import (
    DeputadoPayload,
    ProposicaoPayload,
    convert,
    parse_date,
    parse_datetime,
    parse_money,
)


class TestParseDate:
    """Tests for date parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2024-01-15", date(2024, 1, 15)),
            ("2024-01-15T10:00:00", date(2024, 1, 15)),
            ("15/01/2024", date(2024, 1, 15)),
            ("15/01/2024 08:30", date(2024, 1, 15)),
            (date(2024, 1, 15), date(2024, 1, 15)),
            (None, None),
            ("", None),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_date(value) == expected

    def test_keeps_time(self):
        assert parse_datetime("2024-02-10T14:30:00") == datetime(2024, 2, 10, 14, 30)

    @pytest.mark.parametrize("value", ["31/02/2024", "ontem", "2024-13-01"])
    def test_unparseable_becomes_none(self, value):
        assert parse_date(value) is None


class TestParseMoney:
    """Tests for monetary value parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (250.5, 250.5),
            (100, 100.0),
            ("R$ 1.234,56", 1234.56),
            ("1.234.567,89", 1234567.89),
            ("12,5", 12.5),
            ("99.90", 99.9),
            (None, 0.0),
            ("", 0.0),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_money(value) == pytest.approx(expected)

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_money("caro")


class TestConvertDeputado:
    """Tests for deputado conversion."""

    def test_maps_camel_case_fields(self):
        record = convert("deputado", deputado_payload(204554, siglaPartido="PL", siglaUf="RJ"))

        assert isinstance(record, Deputado)
        assert record.id is None
        assert record.deputado_id == 204554
        assert record.sigla_partido == "PL"
        assert record.sigla_uf == "RJ"
        assert record.id_legislatura == 57

    def test_unknown_fields_are_ignored(self):
        record = convert("deputado", deputado_payload(1, campoNovo="x", outro={"a": 1}))
        assert record.deputado_id == 1

    def test_missing_fields_take_defaults(self):
        record = convert("deputado", {"id": 7})

        assert record.nome == ""
        assert record.sigla_partido is None

    def test_missing_fields_are_reported(self):
        parsed = DeputadoPayload.model_validate({"id": 7, "nome": "Fulano"})
        assert "sigla_partido" in parsed.missing_fields()
        assert "nome" not in parsed.missing_fields()
        # email is legitimately absent from list responses
        assert "email" not in parsed.missing_fields()

    def test_missing_key_raises(self):
        payload = deputado_payload(1)
        del payload["id"]

        with pytest.raises(ConversionError) as exc_info:
            convert("deputado", payload)

        assert exc_info.value.entity_type == "deputado"

    def test_uncoercible_value_raises(self):
        with pytest.raises(ConversionError):
            convert("deputado", deputado_payload("abc"))

    def test_non_object_payload_raises(self):
        with pytest.raises(ConversionError):
            convert("deputado", ["not", "a", "dict"])  # type: ignore[arg-type]

    def test_unknown_entity_type(self):
        with pytest.raises(ValueError):
            convert("senador", {"id": 1})


class TestConvertDespesa:
    """Tests for despesa conversion."""

    def test_deputado_id_comes_from_context(self):
        record = convert("despesa", despesa_payload(7001), context={"deputado_id": 204554})

        assert isinstance(record, Despesa)
        assert record.deputado_id == 204554
        assert record.ano == 2023
        assert record.mes == 5
        assert record.cod_documento == 7001
        assert record.data_documento == date(2023, 5, 10)
        assert record.valor_liquido == pytest.approx(250.5)
        assert record.cnpj_cpf_fornecedor == "12345678000199"

    def test_without_context_raises(self):
        with pytest.raises(ConversionError):
            convert("despesa", despesa_payload(7001))

    def test_brazilian_money_strings(self):
        record = convert(
            "despesa",
            despesa_payload(7001, valorDocumento="R$ 1.234,56", valorGlosa="10,00"),
            context={"deputado_id": 1},
        )
        assert record.valor_documento == pytest.approx(1234.56)
        assert record.valor_glosa == pytest.approx(10.0)

    def test_invalid_month_raises(self):
        with pytest.raises(ConversionError):
            convert("despesa", despesa_payload(7001, mes=13), context={"deputado_id": 1})

    def test_unparseable_document_date_is_null(self):
        record = convert("despesa", despesa_payload(7001, dataDocumento="n/d"), context={"deputado_id": 1})
        assert record.data_documento is None


class TestConvertProposicao:
    """Tests for proposicao conversion."""

    def test_list_item(self):
        record = convert(
            "proposicao",
            {"id": 2345678, "siglaTipo": "PL", "codTipo": 139, "numero": 1234, "ano": 2024, "ementa": "Dispõe sobre..."},
        )

        assert isinstance(record, Proposicao)
        assert record.proposicao_id == 2345678
        assert record.sigla_tipo == "PL"
        assert record.data_apresentacao is None

    def test_detail_with_presentation_date(self):
        record = convert("proposicao", {"id": 1, "dataApresentacao": "2024-01-15T10:00:00"})
        assert record.data_apresentacao == datetime(2024, 1, 15, 10, 0)

    def test_presentation_date_is_optional(self):
        parsed = ProposicaoPayload.model_validate({"id": 1})
        assert "data_apresentacao" not in parsed.missing_fields()


class TestConvertVotacao:
    """Tests for votacao conversion."""

    def test_string_id_and_dates(self):
        record = convert("votacao", votacao_payload("2265603-43"))

        assert isinstance(record, Votacao)
        assert record.votacao_id == "2265603-43"
        assert record.data == date(2023, 3, 14)
        assert record.data_hora_registro == datetime(2023, 3, 14, 18, 42, 10)
        assert record.aprovacao is True

    def test_numeric_id_is_stringified(self):
        record = convert("votacao", votacao_payload(12345))
        assert record.votacao_id == "12345"

    def test_null_approval(self):
        record = convert("votacao", votacao_payload("1-1", aprovacao=None))
        assert record.aprovacao is None
