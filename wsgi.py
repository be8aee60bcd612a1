"""
Ponto de entrada WSGI (gunicorn wsgi:app)
Carrega configuração, banco, integração WhatsApp e inicia os agendadores
"""

import logging

from app import create_app
from billing_scheduler import BillingScheduler
from config import get_config
from database import DatabaseManager
from reminder_scheduler import ReminderScheduler
from templates import TemplateManager
from whatsapp_api import EvolutionAPI

config = get_config()
config.configure_logging()
logger = logging.getLogger(__name__)

for linha in config.resumo():
    logger.info(linha)

validacao = config.validate_all()
for aviso in validacao['warnings']:
    logger.warning(aviso)
for erro in validacao['errors']:
    logger.error(erro)

db = DatabaseManager(config.database)
whatsapp_api = EvolutionAPI(config.whatsapp, db=db)

reminder_scheduler = ReminderScheduler(
    db, whatsapp_api, TemplateManager(),
    minuto=config.scheduler.lembretes_minuto,
    timezone=config.system.timezone
)
billing_scheduler = BillingScheduler(
    db,
    intervalo_horas=config.scheduler.cobranca_intervalo_horas,
    timezone=config.system.timezone
)

if config.scheduler.lembretes_ativo:
    reminder_scheduler.start()
if config.scheduler.cobranca_ativa:
    billing_scheduler.start()

app = create_app(
    config=config,
    db=db,
    whatsapp_api=whatsapp_api,
    reminder_scheduler=reminder_scheduler,
    billing_scheduler=billing_scheduler,
)
