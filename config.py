"""
Configuração do Gestor Financeiro
Seções tipadas lidas do ambiente (.env opcional) e validação antes de subir o serviço
"""

import os
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

NIVEIS_LOG = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

# nome -> (descrição, obrigatória, secreta)
VARIAVEIS_AMBIENTE = {
    'JWT_SECRET_KEY': ('Segredo para assinatura dos tokens JWT', True, True),
    'DATABASE_URL': ('URL completa do PostgreSQL (prioritária sobre PG*)', False, True),
    'PGHOST': ('Host do PostgreSQL', False, False),
    'PGPORT': ('Porta do PostgreSQL', False, False),
    'PGDATABASE': ('Nome do banco', False, False),
    'PGUSER': ('Usuário do banco', False, False),
    'PGPASSWORD': ('Senha do banco', False, True),
    'EVOLUTION_API_URL': ('URL da Evolution API', False, False),
    'EVOLUTION_API_KEY': ('Chave da Evolution API', False, True),
    'EVOLUTION_INSTANCE_NAME': ('Instância padrão do WhatsApp', False, False),
    'PUBLIC_URL': ('URL pública usada nos links de confirmação de venda', False, False),
    'REMINDERS_ENABLED': ('Agendador de lembretes ativo (true/false)', False, False),
    'REMINDERS_CRON_MINUTE': ('Minuto de cada hora em que os lembretes rodam', False, False),
    'BILLING_ENABLED': ('Cobrança mensal de planos ativa (true/false)', False, False),
    'BILLING_INTERVAL_HOURS': ('Intervalo da verificação de cobrança (horas)', False, False),
    'JWT_EXPIRES_HOURS': ('Validade do token de acesso (horas)', False, False),
    'LOG_LEVEL': ('Nível de log', False, False),
    'TIMEZONE': ('Fuso horário dos agendadores', False, False),
}


def _env_bool(nome: str, padrao: str) -> bool:
    return os.getenv(nome, padrao).strip().lower() in ('true', '1', 'yes', 'sim')


def _env_int(nome: str, padrao: int) -> int:
    valor = os.getenv(nome)
    if valor is None or not valor.strip():
        return padrao
    try:
        return int(valor)
    except ValueError:
        logger.warning(f"{nome}={valor!r} não é inteiro; usando {padrao}")
        return padrao


@dataclass
class DatabaseConfig:
    """PostgreSQL: DATABASE_URL ou parâmetros PG*"""
    host: str = 'localhost'
    port: int = 5432
    database: str = 'gestor_financeiro'
    username: str = 'postgres'
    password: str = ''
    url: Optional[str] = None

    @property
    def connection_url(self) -> str:
        return self.url or f"postgresql://{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    def validate(self) -> bool:
        return bool(self.url) or all([self.host, self.database, self.username, self.password])


@dataclass
class WhatsAppConfig:
    """Evolution API; sem URL, chave e instância o envio fica desativado"""
    api_url: str = ''
    api_key: str = ''
    instance_name: str = ''
    timeout: int = 30
    max_retries: int = 3
    retry_delay: int = 5
    message_delay: int = 1200
    public_url: str = 'http://localhost:5000'

    def validate(self) -> bool:
        return bool(self.api_url and self.api_key and self.instance_name)


@dataclass
class SchedulerConfig:
    lembretes_ativo: bool = True
    lembretes_minuto: str = '0'
    cobranca_ativa: bool = True
    cobranca_intervalo_horas: int = 24

    def validate(self) -> bool:
        minuto = str(self.lembretes_minuto)
        minuto_ok = minuto == '*' or (minuto.isdigit() and 0 <= int(minuto) <= 59)
        return minuto_ok and self.cobranca_intervalo_horas > 0


@dataclass
class AuthConfig:
    jwt_secret: str = ''
    token_expira_horas: int = 12

    def validate(self) -> bool:
        return bool(self.jwt_secret) and self.token_expira_horas > 0


@dataclass
class SystemConfig:
    log_level: str = 'INFO'
    timezone: str = 'America/Sao_Paulo'
    debug_mode: bool = False

    def validate(self) -> bool:
        return self.log_level.upper() in NIVEIS_LOG


class Config:
    """Agrupa as seções; construída uma vez no wsgi e repassada aos serviços"""

    def __init__(self, env_file: str = '.env'):
        if Path(env_file).exists():
            load_dotenv(env_file)
            logger.info(f"Variáveis carregadas de {env_file}")

        self.database = DatabaseConfig(
            host=os.getenv('PGHOST', 'localhost'),
            port=_env_int('PGPORT', 5432),
            database=os.getenv('PGDATABASE', 'gestor_financeiro'),
            username=os.getenv('PGUSER', 'postgres'),
            password=os.getenv('PGPASSWORD', ''),
            url=os.getenv('DATABASE_URL') or None,
        )
        self.whatsapp = WhatsAppConfig(
            api_url=os.getenv('EVOLUTION_API_URL', ''),
            api_key=os.getenv('EVOLUTION_API_KEY', ''),
            instance_name=os.getenv('EVOLUTION_INSTANCE_NAME', ''),
            timeout=_env_int('EVOLUTION_TIMEOUT', 30),
            max_retries=_env_int('EVOLUTION_MAX_RETRIES', 3),
            retry_delay=_env_int('EVOLUTION_RETRY_DELAY', 5),
            message_delay=_env_int('EVOLUTION_MESSAGE_DELAY', 1200),
            public_url=os.getenv('PUBLIC_URL', 'http://localhost:5000').rstrip('/'),
        )
        self.scheduler = SchedulerConfig(
            lembretes_ativo=_env_bool('REMINDERS_ENABLED', 'true'),
            lembretes_minuto=os.getenv('REMINDERS_CRON_MINUTE', '0').strip(),
            cobranca_ativa=_env_bool('BILLING_ENABLED', 'true'),
            cobranca_intervalo_horas=_env_int('BILLING_INTERVAL_HOURS', 24),
        )
        self.auth = AuthConfig(
            jwt_secret=os.getenv('JWT_SECRET_KEY', ''),
            token_expira_horas=_env_int('JWT_EXPIRES_HOURS', 12),
        )
        self.system = SystemConfig(
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            timezone=os.getenv('TIMEZONE', 'America/Sao_Paulo'),
            debug_mode=_env_bool('DEBUG_MODE', 'false'),
        )

    def validate_all(self) -> Dict[str, Any]:
        """{'valid', 'errors', 'warnings'}; erros impedem o serviço de operar corretamente"""
        errors: List[str] = []
        warnings: List[str] = []

        if not self.database.validate():
            errors.append("Banco não configurado: defina DATABASE_URL ou PGHOST/PGDATABASE/PGUSER/PGPASSWORD")
        if not self.auth.validate():
            errors.append("JWT_SECRET_KEY não configurada")
        if not self.scheduler.validate():
            errors.append("REMINDERS_CRON_MINUTE ou BILLING_INTERVAL_HOURS inválido")
        if not self.whatsapp.validate():
            warnings.append("Evolution API incompleta: lembretes serão registrados como falha")
        if not self.system.validate():
            warnings.append(f"LOG_LEVEL inválido: {self.system.log_level}")

        return {'valid': not errors, 'errors': errors, 'warnings': warnings}

    def configure_logging(self):
        nivel = getattr(logging, self.system.log_level, logging.INFO)
        formato = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        if self.system.debug_mode:
            nivel = logging.DEBUG
            formato = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'

        logging.basicConfig(level=nivel, format=formato, datefmt='%Y-%m-%d %H:%M:%S')
        for ruidoso in ('requests', 'urllib3', 'apscheduler'):
            logging.getLogger(ruidoso).setLevel(logging.WARNING)
        logger.info(f"Logging configurado - Nível: {logging.getLevelName(nivel)}")

    def resumo(self) -> List[str]:
        """Linhas legíveis do estado da configuração (sem segredos)"""
        banco = 'DATABASE_URL' if self.database.url else f"{self.database.host}:{self.database.port}/{self.database.database}"
        whatsapp = (f"{self.whatsapp.api_url} (instância {self.whatsapp.instance_name})"
                    if self.whatsapp.validate() else '❌ não configurado')
        lembretes = (f"✅ minuto {self.scheduler.lembretes_minuto} de cada hora"
                     if self.scheduler.lembretes_ativo else '❌ inativo')
        cobranca = (f"✅ a cada {self.scheduler.cobranca_intervalo_horas}h"
                    if self.scheduler.cobranca_ativa else '❌ inativa')
        return [
            f"🗄️ Banco: {banco}",
            f"📱 WhatsApp: {whatsapp}",
            f"🔗 Links públicos: {self.whatsapp.public_url}",
            f"🔔 Lembretes: {lembretes}",
            f"💳 Cobrança de planos: {cobranca}",
            f"🕐 Timezone: {self.system.timezone}",
        ]

    def export_env_template(self) -> str:
        """Conteúdo de um .env.example com os valores atuais (segredos mascarados)"""
        linhas = ["# Gestor Financeiro", ""]
        for obrigatoria in (True, False):
            linhas.append("# === OBRIGATÓRIAS ===" if obrigatoria else "# === OPCIONAIS ===")
            for nome, (descricao, requerida, secreta) in VARIAVEIS_AMBIENTE.items():
                if requerida != obrigatoria:
                    continue
                valor = os.getenv(nome, '')
                if secreta and valor:
                    valor = valor[:4] + '...'
                linhas.extend([f"# {descricao}", f"{nome}={valor}", ""])
        return "\n".join(linhas)


def get_config(env_file: str = '.env') -> Config:
    return Config(env_file)
