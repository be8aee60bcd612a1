from datetime import date
from decimal import Decimal

from templates import TemplateManager

CONTA = {
    'cliente_nome': 'Maria Silva',
    'valor': Decimal('1234.5'),
    'vencimento': date(2024, 6, 10),
    'descricao': 'Mensalidade',
}


def test_all_variables_are_replaced():
    texto = TemplateManager().processar_template(
        '{cliente}: {descricao} {valor} em {vencimento} ({dias_atraso})', CONTA, date(2024, 6, 7)
    )
    assert texto == 'Maria Silva: Mensalidade R$ 1234,50 em 10/06/2024 (0)'


def test_repeated_placeholders():
    texto = TemplateManager().processar_template('{cliente} {cliente}', CONTA, date(2024, 6, 7))
    assert texto == 'Maria Silva Maria Silva'


def test_days_late_after_due():
    dados = TemplateManager().preparar_dados(CONTA, date(2024, 6, 15))
    assert dados['dias_atraso'] == '5'


def test_due_date_as_iso_string():
    conta = dict(CONTA, vencimento='2024-06-10')
    assert TemplateManager().preparar_dados(conta, date(2024, 6, 7))['vencimento'] == '10/06/2024'


def test_validation():
    manager = TemplateManager()
    assert manager.validar_template('Olá {cliente}, vence {vencimento}') == []
    assert manager.validar_template('') == ['Mensagem vazia']
    assert manager.validar_template('Olá {nome}') == ['Variável desconhecida: {nome}']
    assert 'Chaves desbalanceadas no template' in manager.validar_template('Olá {cliente')


def test_available_variables():
    variaveis = TemplateManager().obter_variaveis_disponiveis()
    assert set(variaveis) == {'cliente', 'valor', 'vencimento', 'descricao', 'dias_atraso'}
