#!/usr/bin/env python3
"""
Utilitário de execução do Gestor Financeiro

    python run.py                 servidor (gunicorn se PORT/ENVIRONMENT=production, senão Flask)
    python run.py check           valida a configuração e mostra o resumo
    python run.py env-template    gera .env.example
    python run.py billing         gera as cobranças de planos agora (ignora o dia 1)
"""

import os
import sys
import subprocess

from config import get_config


def servidor_producao():
    porta = os.getenv('PORT', '5000')
    # Um único worker: os agendadores vivem dentro do processo
    cmd = [
        'gunicorn', 'wsgi:app',
        '--bind', f'0.0.0.0:{porta}',
        '--workers', '1',
        '--threads', os.getenv('GUNICORN_THREADS', '4'),
        '--timeout', '120',
        '--access-logfile', '-',
        '--error-logfile', '-',
    ]
    print(f"🚀 Gunicorn na porta {porta}")
    return subprocess.call(cmd)


def servidor_desenvolvimento():
    from wsgi import app

    porta = int(os.getenv('PORT', 5000))
    host = os.getenv('HOST', '127.0.0.1')
    print(f"🛠️ Servidor Flask de desenvolvimento em {host}:{porta}")
    # Sem reloader para não iniciar os agendadores duas vezes
    app.run(host=host, port=porta, debug=False, threaded=True, use_reloader=False)
    return 0


def verificar_configuracao():
    config = get_config()
    for linha in config.resumo():
        print(linha)

    validacao = config.validate_all()
    for aviso in validacao['warnings']:
        print(f"🟡 {aviso}")
    for erro in validacao['errors']:
        print(f"🔴 {erro}")
    print("✅ Configuração válida" if validacao['valid'] else "❌ Configuração com erros")
    return 0 if validacao['valid'] else 1


def gerar_env_exemplo(destino='.env.example'):
    with open(destino, 'w', encoding='utf-8') as f:
        f.write(get_config().export_env_template())
    print(f"📄 {destino} gerado")
    return 0


def cobranca_manual():
    from billing_scheduler import BillingScheduler
    from database import DatabaseManager

    config = get_config()
    config.configure_logging()
    criadas = BillingScheduler(DatabaseManager(config.database)).disparar_cobranca_manual()
    print(f"💳 {criadas} cobranças criadas")
    return 0


COMANDOS = {
    'check': verificar_configuracao,
    'env-template': gerar_env_exemplo,
    'billing': cobranca_manual,
}


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if argv:
        comando = COMANDOS.get(argv[0])
        if comando is None:
            print(f"Comando desconhecido: {argv[0]} (use: {', '.join(COMANDOS)})")
            return 2
        return comando()

    producao = os.getenv('PORT') is not None or os.getenv('ENVIRONMENT') == 'production'
    return servidor_producao() if producao else servidor_desenvolvimento()


if __name__ == '__main__':
    sys.exit(main())
