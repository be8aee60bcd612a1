"""
Utilitários do Gestor Financeiro
Horário de Brasília, datas e valores no padrão brasileiro, telefones e tokens
"""

import re
import secrets
import logging
from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union, Any

import pytz
from dateutil.relativedelta import relativedelta

TIMEZONE_BR = pytz.timezone('America/Sao_Paulo')

DUAS_CASAS = Decimal('0.01')

logger = logging.getLogger(__name__)

# === FUNÇÕES DE DATA E HORA ===

def agora_br() -> datetime:
    """Retorna datetime atual no fuso horário de Brasília"""
    return datetime.now(TIMEZONE_BR)

def converter_para_br(dt: datetime) -> datetime:
    """Converte datetime para timezone brasileiro"""
    if dt.tzinfo is None:
        # Se não tem timezone, assume UTC
        dt = pytz.utc.localize(dt)
    return dt.astimezone(TIMEZONE_BR)

def para_data(valor: Union[datetime, date, str, None]) -> Optional[date]:
    """Normaliza datetime/date/string ISO para date"""
    if valor is None:
        return None
    if isinstance(valor, datetime):
        return valor.date()
    if isinstance(valor, date):
        return valor
    texto = str(valor).strip()
    if not texto:
        return None
    if 'T' in texto:
        return datetime.fromisoformat(texto.replace('Z', '+00:00')).date()
    try:
        return datetime.strptime(texto[:10], '%Y-%m-%d').date()
    except ValueError:
        data_br = parsear_data_br(texto)
        if data_br is None:
            raise ValueError(f"Data inválida: {valor}")
        return data_br

def formatar_data_br(dt: Union[datetime, date, str]) -> str:
    """Formata data no padrão brasileiro (DD/MM/AAAA)"""
    if isinstance(dt, str):
        try:
            dt = para_data(dt)
        except ValueError:
            return dt

    if isinstance(dt, datetime):
        dt = dt.date()

    return dt.strftime('%d/%m/%Y')

def parsear_data_br(data_str: str) -> Optional[date]:
    """Converte string em formato brasileiro para date"""
    try:
        return datetime.strptime(data_str, '%d/%m/%Y').date()
    except ValueError:
        try:
            return datetime.strptime(data_str, '%d/%m/%y').date()
        except ValueError:
            return None

def adicionar_meses(data_base: date, meses: int) -> date:
    """Soma meses a uma data; dia 31 vira o último dia do mês de destino"""
    return data_base + relativedelta(months=meses)

def normalizar_horario(horario: str) -> str:
    """Valida e normaliza horário para HH:MM (aceita HH:MM:SS)"""
    if not horario:
        raise ValueError("Horário não informado")
    match = re.fullmatch(r'(\d{1,2}):(\d{2})(?::\d{2})?', str(horario).strip())
    if not match:
        raise ValueError(f"Horário inválido: {horario}")
    hora, minuto = int(match.group(1)), int(match.group(2))
    if hora > 23 or minuto > 59:
        raise ValueError(f"Horário inválido: {horario}")
    return f"{hora:02d}:{minuto:02d}"

# === FUNÇÕES DE VALORES ===

def para_decimal(valor: Any) -> Decimal:
    """Converte valor (str com vírgula, float, int) para Decimal"""
    if isinstance(valor, Decimal):
        return valor
    if isinstance(valor, str):
        valor = valor.strip().replace('R$', '').strip()
        if ',' in valor:
            valor = valor.replace('.', '').replace(',', '.')
    try:
        return Decimal(str(valor))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Valor monetário inválido: {valor}")

def arredondar_dinheiro(valor: Any) -> Decimal:
    """Arredonda para 2 casas (ROUND_HALF_UP)"""
    return para_decimal(valor).quantize(DUAS_CASAS, rounding=ROUND_HALF_UP)

def formatar_moeda(valor: Union[Decimal, float, int, str]) -> str:
    """Formata valor monetário no padrão brasileiro (R$ 1.234,56)"""
    try:
        valor = arredondar_dinheiro(valor)
        return f"R$ {valor:,.2f}".replace(',', 'X').replace('.', ',').replace('X', '.')
    except (ValueError, TypeError):
        return "R$ 0,00"

def formatar_valor_lembrete(valor: Union[Decimal, float, int, str]) -> str:
    """Formata valor para lembretes: R$ 1234,56 (sem separador de milhar)"""
    return f"R$ {arredondar_dinheiro(valor):.2f}".replace('.', ',')

# === TELEFONE / TOKENS ===

def limpar_telefone(telefone: str) -> str:
    """Mantém apenas dígitos e garante DDI 55 para números brasileiros"""
    if not telefone:
        return ""
    apenas_numeros = re.sub(r'\D', '', str(telefone))
    if apenas_numeros.startswith('55') and len(apenas_numeros) >= 12:
        return apenas_numeros
    # Remover 0 à esquerda do DDD se presente
    if apenas_numeros.startswith('0') and len(apenas_numeros) in (11, 12):
        apenas_numeros = apenas_numeros[1:]
    if len(apenas_numeros) in (10, 11):
        return "55" + apenas_numeros
    if len(apenas_numeros) >= 10:
        return apenas_numeros
    return ""

def gerar_token_confirmacao() -> str:
    """Token opaco e imprevisível para o link público de confirmação"""
    return secrets.token_urlsafe(24)
