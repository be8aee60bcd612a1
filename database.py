"""
Gerenciador de Banco de Dados PostgreSQL
Clientes, contas a receber/pagar, lembretes, vendas parceladas e planos
- Compatível com DATABASE_URL (SSL) ou variáveis PG*
- Isolamento multi-tenant por usuario_id (cada usuário vê apenas seus dados)
"""

import os
import time
import logging
from contextlib import contextmanager
from datetime import date

import psycopg2
from psycopg2.errors import ForeignKeyViolation
from psycopg2.extras import RealDictCursor

from errors import ClienteEmUsoError
from models import (
    DOCUMENTO_CLIENTE_SISTEMA, VENDA_PENDENTE, VENDA_CONFIRMADA,
    VENDA_APROVADA, VENDA_REJEITADA,
)
from utils import adicionar_meses

logger = logging.getLogger(__name__)

TABELAS_CONTA = {
    'receber': 'contas_receber',
    'pagar': 'contas_pagar',
}

CAMPOS_CLIENTE = ('nome', 'whatsapp', 'documento', 'email', 'endereco', 'cep', 'cidade', 'estado')
CAMPOS_CONTA = ('cliente_id', 'descricao', 'valor', 'vencimento', 'status', 'tipo',
                'numero_parcela', 'total_parcelas', 'parent_id')
CAMPOS_LEMBRETE = ('nome', 'mensagem_template', 'tipo_gatilho', 'dias_gatilho', 'horario_gatilho', 'ativo')


def _mask_conn_dict(d):
    # Não vaze senha nos logs
    if not isinstance(d, dict):
        return d
    out = {}
    for k, v in d.items():
        if k.lower() in ("password", "pgpassword"):
            out[k] = "****"
        else:
            out[k] = v
    return out


def _montar_set(dados, permitidos):
    """Monta cláusula SET apenas com colunas permitidas"""
    campos = [c for c in permitidos if c in dados]
    if not campos:
        return None, []
    clausula = ", ".join(f"{c} = %s" for c in campos)
    return clausula, [dados[c] for c in campos]


class DatabaseManager:
    def __init__(self, database_config=None, inicializar=True):
        """Inicializa conexão com PostgreSQL (DATABASE_URL ou PG*)"""
        if database_config is not None:
            self.database_url = database_config.url
            host = database_config.host
            params = {
                'host': host,
                'database': database_config.database,
                'user': database_config.username,
                'password': database_config.password,
                'port': str(database_config.port),
            }
        else:
            self.database_url = os.getenv('DATABASE_URL')
            host = os.getenv('PGHOST', 'localhost')
            params = {
                'host': host,
                'database': os.getenv('PGDATABASE', 'gestor_financeiro'),
                'user': os.getenv('PGUSER', 'postgres'),
                'password': os.getenv('PGPASSWORD', ''),
                'port': os.getenv('PGPORT', '5432'),
            }

        # Se não for localhost, exigimos SSL por padrão
        default_sslmode = 'disable' if host in ('localhost', '127.0.0.1') else 'require'
        params['sslmode'] = os.getenv('PGSSLMODE', default_sslmode)
        self.connection_params = params

        logger.info("🔧 Configuração do banco:")
        if self.database_url:
            logger.info(f"- DATABASE_URL: {self.database_url[:30]}...")
        logger.info(f"- Parâmetros (sem senha): {_mask_conn_dict(self.connection_params)}")

        if inicializar:
            self.init_database()

    # -------------------------
    # Conexão
    # -------------------------
    def get_connection(self):
        """Cria nova conexão com o banco - DATABASE_URL prioritário"""
        if self.database_url:
            try:
                conn = psycopg2.connect(self.database_url, sslmode=os.getenv('PGSSLMODE', 'require'))
                conn.autocommit = False
                return conn
            except psycopg2.Error as e:
                logger.warning(f"Falha com DATABASE_URL: {e}")

        try:
            conn = psycopg2.connect(**self.connection_params)
            conn.autocommit = False
            return conn
        except psycopg2.Error as e:
            logger.error(f"Erro ao conectar com PostgreSQL: {e}")
            logger.error(f"Parâmetros (sem senha): {_mask_conn_dict(self.connection_params)}")
            raise

    @contextmanager
    def conexao(self):
        """Conexão com commit ao final, rollback em erro e fechamento garantido"""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -------------------------
    # Exec helpers
    # -------------------------
    def execute_query(self, query, params=None):
        """Executa uma query de modificação (INSERT, UPDATE, DELETE)"""
        try:
            with self.conexao() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    return cursor.rowcount
        except psycopg2.Error as e:
            logger.error(f"Erro ao executar query: {e}")
            raise

    def fetch_one(self, query, params=None):
        """Executa uma query e retorna um único resultado"""
        try:
            with self.conexao() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    result = cursor.fetchone()
                    return dict(result) if result else None
        except psycopg2.Error as e:
            logger.error(f"Erro ao executar fetch_one: {e}")
            raise

    def fetch_all(self, query, params=None):
        """Executa uma query e retorna todos os resultados"""
        try:
            with self.conexao() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    return [dict(row) for row in cursor.fetchall()]
        except psycopg2.Error as e:
            logger.error(f"Erro ao executar fetch_all: {e}")
            raise

    # -------------------------
    # Inicialização
    # -------------------------
    def init_database(self):
        """Inicializa as tabelas do banco de dados com retry"""
        max_attempts = 5
        retry_delay = 2

        for attempt in range(max_attempts):
            try:
                logger.info(f"Tentativa {attempt + 1} de conectar ao banco...")
                with self.conexao() as conn:
                    with conn.cursor() as cursor:
                        cursor.execute("SELECT 1")
                        cursor.fetchone()
                        logger.info("Conectividade básica confirmada")

                        self.create_tables(cursor)
                        self.create_indexes(cursor)

                logger.info("Banco de dados inicializado com sucesso!")
                return True

            except psycopg2.OperationalError as e:
                logger.warning(f"Erro de conectividade na tentativa {attempt + 1}: {e}")
                if attempt < max_attempts - 1:
                    time.sleep(retry_delay)
                    retry_delay *= 2  # Backoff exponencial
                else:
                    logger.error("Esgotadas tentativas de conexão com PostgreSQL")
                    raise

        return False

    def create_tables(self, cursor):
        """Cria todas as tabelas necessárias"""

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS usuarios (
                id SERIAL PRIMARY KEY,
                username VARCHAR(255) UNIQUE NOT NULL,
                email VARCHAR(255) UNIQUE NOT NULL,
                senha_hash VARCHAR(255) NOT NULL,
                nome VARCHAR(255),
                sobrenome VARCHAR(255),
                telefone VARCHAR(20),
                is_admin BOOLEAN DEFAULT FALSE NOT NULL,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS clientes (
                id SERIAL PRIMARY KEY,
                usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                nome VARCHAR(255) NOT NULL,
                whatsapp VARCHAR(20) NOT NULL,
                documento VARCHAR(20) NOT NULL,
                email VARCHAR(255),
                endereco TEXT,
                cep VARCHAR(10),
                cidade VARCHAR(100),
                estado VARCHAR(20),
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        for tabela in TABELAS_CONTA.values():
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {tabela} (
                    id SERIAL PRIMARY KEY,
                    usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                    cliente_id INTEGER NOT NULL REFERENCES clientes(id),
                    descricao TEXT NOT NULL,
                    valor NUMERIC(10, 2) NOT NULL,
                    vencimento DATE NOT NULL,
                    status VARCHAR(50) NOT NULL DEFAULT 'pending',
                    tipo VARCHAR(50) NOT NULL DEFAULT 'single',
                    numero_parcela INTEGER,
                    total_parcelas INTEGER,
                    parent_id INTEGER,
                    pago_em TIMESTAMPTZ,
                    criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lembretes_pagamento (
                id SERIAL PRIMARY KEY,
                usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                nome VARCHAR(255) NOT NULL,
                mensagem_template TEXT NOT NULL,
                tipo_gatilho VARCHAR(50) NOT NULL,
                dias_gatilho INTEGER NOT NULL DEFAULT 0 CHECK (dias_gatilho >= 0),
                horario_gatilho VARCHAR(8) NOT NULL,
                ativo BOOLEAN DEFAULT TRUE,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS logs_lembrete (
                id SERIAL PRIMARY KEY,
                lembrete_id INTEGER NOT NULL REFERENCES lembretes_pagamento(id),
                conta_receber_id INTEGER NOT NULL REFERENCES contas_receber(id),
                cliente_id INTEGER NOT NULL REFERENCES clientes(id),
                mensagem TEXT NOT NULL,
                status VARCHAR(50) NOT NULL,
                erro TEXT,
                enviado_em TIMESTAMPTZ,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vendas_parceladas (
                id SERIAL PRIMARY KEY,
                usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                cliente_id INTEGER NOT NULL REFERENCES clientes(id),
                descricao TEXT NOT NULL,
                valor_total NUMERIC(10, 2) NOT NULL,
                quantidade_parcelas INTEGER NOT NULL CHECK (quantidade_parcelas > 0),
                valor_parcela NUMERIC(10, 2) NOT NULL,
                primeiro_vencimento DATE NOT NULL,
                token_confirmacao VARCHAR(255) UNIQUE NOT NULL,
                status VARCHAR(50) NOT NULL DEFAULT 'pending',
                foto_documento_url TEXT,
                cliente_assinou_em TIMESTAMPTZ,
                usuario_revisou_em TIMESTAMPTZ,
                usuario_aprovou_em TIMESTAMPTZ,
                observacoes TEXT,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS planos (
                id SERIAL PRIMARY KEY,
                nome VARCHAR(255) NOT NULL,
                descricao TEXT,
                preco NUMERIC(10, 2) NOT NULL,
                max_clientes INTEGER NOT NULL DEFAULT -1,
                max_transacoes INTEGER NOT NULL DEFAULT -1,
                ativo BOOLEAN DEFAULT TRUE NOT NULL,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                atualizado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS assinaturas_usuario (
                id SERIAL PRIMARY KEY,
                usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                plano_id INTEGER NOT NULL REFERENCES planos(id),
                inicio TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP NOT NULL,
                fim TIMESTAMPTZ NOT NULL,
                ativa BOOLEAN DEFAULT TRUE NOT NULL,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS instancias_whatsapp (
                id SERIAL PRIMARY KEY,
                usuario_id INTEGER NOT NULL REFERENCES usuarios(id),
                nome_instancia VARCHAR(255) NOT NULL,
                ativa BOOLEAN DEFAULT TRUE NOT NULL,
                criado_em TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)

        logger.info("Tabelas criadas/atualizadas com sucesso!")

    def create_indexes(self, cursor):
        """Cria índices para otimização"""
        indices = [
            "CREATE INDEX IF NOT EXISTS idx_clientes_usuario ON clientes(usuario_id)",
            "CREATE INDEX IF NOT EXISTS idx_receber_usuario_status ON contas_receber(usuario_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_pagar_usuario_status ON contas_pagar(usuario_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_lembretes_usuario_ativo ON lembretes_pagamento(usuario_id, ativo)",
            "CREATE INDEX IF NOT EXISTS idx_logs_lembrete_conta ON logs_lembrete(lembrete_id, conta_receber_id)",
            "CREATE INDEX IF NOT EXISTS idx_vendas_usuario ON vendas_parceladas(usuario_id)",
            "CREATE INDEX IF NOT EXISTS idx_assinaturas_ativas ON assinaturas_usuario(ativa)",
        ]
        for sql in indices:
            cursor.execute(sql)
        logger.info("Índices criados/verificados")

    # -------------------------
    # USUÁRIOS
    # -------------------------
    def listar_usuarios(self):
        """Lista todos os usuários (usado pelos agendadores)"""
        return self.fetch_all("SELECT id, username, nome, sobrenome, telefone FROM usuarios ORDER BY id")

    def buscar_usuario_por_id(self, usuario_id):
        return self.fetch_one(
            "SELECT id, username, email, nome, sobrenome, telefone, is_admin FROM usuarios WHERE id = %s",
            (usuario_id,)
        )

    def buscar_usuario_por_username(self, username):
        return self.fetch_one("SELECT * FROM usuarios WHERE username = %s OR email = %s", (username, username))

    def criar_usuario(self, username, email, senha_hash, nome=None, sobrenome=None, telefone=None, is_admin=False):
        return self.fetch_one("""
            INSERT INTO usuarios (username, email, senha_hash, nome, sobrenome, telefone, is_admin)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id, username, email, nome, sobrenome, telefone, is_admin
        """, (username, email, senha_hash, nome, sobrenome, telefone, is_admin))

    # -------------------------
    # CLIENTES (ISOLADO)
    # -------------------------
    def listar_clientes(self, usuario_id):
        return self.fetch_all("SELECT * FROM clientes WHERE usuario_id = %s ORDER BY nome", (usuario_id,))

    def buscar_cliente(self, cliente_id, usuario_id):
        return self.fetch_one("SELECT * FROM clientes WHERE id = %s AND usuario_id = %s", (cliente_id, usuario_id))

    def criar_cliente(self, usuario_id, dados):
        campos = [c for c in CAMPOS_CLIENTE if c in dados]
        colunas = ", ".join(['usuario_id'] + campos)
        marcadores = ", ".join(['%s'] * (len(campos) + 1))
        return self.fetch_one(
            f"INSERT INTO clientes ({colunas}) VALUES ({marcadores}) RETURNING *",
            [usuario_id] + [dados[c] for c in campos]
        )

    def atualizar_cliente(self, cliente_id, usuario_id, dados):
        clausula, valores = _montar_set(dados, CAMPOS_CLIENTE)
        if not clausula:
            return self.buscar_cliente(cliente_id, usuario_id)
        return self.fetch_one(f"""
            UPDATE clientes SET {clausula}, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s
            RETURNING *
        """, valores + [cliente_id, usuario_id])

    def excluir_cliente(self, cliente_id, usuario_id):
        try:
            return self.execute_query(
                "DELETE FROM clientes WHERE id = %s AND usuario_id = %s", (cliente_id, usuario_id)
            )
        except ForeignKeyViolation:
            raise ClienteEmUsoError("Cliente possui contas, vendas ou lembretes vinculados")

    # -------------------------
    # CONTAS A RECEBER / PAGAR (ISOLADO)
    # -------------------------
    def _tabela_conta(self, tipo):
        if tipo not in TABELAS_CONTA:
            raise ValueError(f"Tipo de conta inválido: {tipo}")
        return TABELAS_CONTA[tipo]

    def listar_contas(self, tipo, usuario_id):
        tabela = self._tabela_conta(tipo)
        return self.fetch_all(f"""
            SELECT c.*, cl.nome AS cliente_nome, cl.whatsapp AS cliente_whatsapp
            FROM {tabela} c
            LEFT JOIN clientes cl ON cl.id = c.cliente_id
            WHERE c.usuario_id = %s
            ORDER BY c.vencimento
        """, (usuario_id,))

    def buscar_conta(self, tipo, conta_id, usuario_id):
        tabela = self._tabela_conta(tipo)
        return self.fetch_one(f"SELECT * FROM {tabela} WHERE id = %s AND usuario_id = %s", (conta_id, usuario_id))

    def criar_conta(self, tipo, usuario_id, dados):
        tabela = self._tabela_conta(tipo)
        campos = [c for c in CAMPOS_CONTA if c in dados]
        colunas = ", ".join(['usuario_id'] + campos)
        marcadores = ", ".join(['%s'] * (len(campos) + 1))
        return self.fetch_one(
            f"INSERT INTO {tabela} ({colunas}) VALUES ({marcadores}) RETURNING *",
            [usuario_id] + [dados[c] for c in campos]
        )

    def atualizar_conta(self, tipo, conta_id, usuario_id, dados):
        tabela = self._tabela_conta(tipo)
        clausula, valores = _montar_set(dados, CAMPOS_CONTA)
        if not clausula:
            return self.buscar_conta(tipo, conta_id, usuario_id)
        return self.fetch_one(f"""
            UPDATE {tabela} SET {clausula}, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s
            RETURNING *
        """, valores + [conta_id, usuario_id])

    def marcar_conta_paga(self, tipo, conta_id, usuario_id, pago_em):
        tabela = self._tabela_conta(tipo)
        return self.fetch_one(f"""
            UPDATE {tabela} SET status = 'paid', pago_em = %s, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s
            RETURNING *
        """, (pago_em, conta_id, usuario_id))

    def excluir_conta(self, tipo, conta_id, usuario_id):
        tabela = self._tabela_conta(tipo)
        return self.execute_query(f"DELETE FROM {tabela} WHERE id = %s AND usuario_id = %s", (conta_id, usuario_id))

    def listar_contas_receber_pendentes(self, usuario_id):
        """Contas a receber pendentes com dados do cliente (para lembretes)"""
        return self.fetch_all("""
            SELECT r.id, r.usuario_id, r.cliente_id, r.descricao, r.valor, r.vencimento, r.status,
                   c.nome AS cliente_nome, c.whatsapp AS cliente_whatsapp
            FROM contas_receber r
            JOIN clientes c ON c.id = r.cliente_id
            WHERE r.usuario_id = %s AND r.status = 'pending'
            ORDER BY r.vencimento
        """, (usuario_id,))

    def obter_resumo(self, usuario_id, hoje):
        """Totais para o painel do usuário"""
        return self.fetch_one("""
            SELECT
                (SELECT COALESCE(SUM(valor), 0) FROM contas_receber WHERE usuario_id = %s AND status = 'pending') AS total_receber,
                (SELECT COALESCE(SUM(valor), 0) FROM contas_pagar WHERE usuario_id = %s AND status = 'pending') AS total_pagar,
                (SELECT COUNT(*) FROM contas_receber WHERE usuario_id = %s AND status = 'pending' AND vencimento < %s) AS receber_vencidas,
                (SELECT COUNT(*) FROM contas_pagar WHERE usuario_id = %s AND status = 'pending' AND vencimento < %s) AS pagar_vencidas,
                (SELECT COUNT(*) FROM clientes WHERE usuario_id = %s) AS clientes
        """, (usuario_id, usuario_id, usuario_id, hoje, usuario_id, hoje, usuario_id))

    # -------------------------
    # LEMBRETES (ISOLADO)
    # -------------------------
    def listar_lembretes(self, usuario_id):
        return self.fetch_all(
            "SELECT * FROM lembretes_pagamento WHERE usuario_id = %s ORDER BY id", (usuario_id,)
        )

    def listar_lembretes_ativos(self, usuario_id):
        return self.fetch_all(
            "SELECT * FROM lembretes_pagamento WHERE usuario_id = %s AND ativo = TRUE ORDER BY id", (usuario_id,)
        )

    def buscar_lembrete(self, lembrete_id, usuario_id):
        return self.fetch_one(
            "SELECT * FROM lembretes_pagamento WHERE id = %s AND usuario_id = %s", (lembrete_id, usuario_id)
        )

    def criar_lembrete(self, usuario_id, dados):
        campos = [c for c in CAMPOS_LEMBRETE if c in dados]
        colunas = ", ".join(['usuario_id'] + campos)
        marcadores = ", ".join(['%s'] * (len(campos) + 1))
        return self.fetch_one(
            f"INSERT INTO lembretes_pagamento ({colunas}) VALUES ({marcadores}) RETURNING *",
            [usuario_id] + [dados[c] for c in campos]
        )

    def atualizar_lembrete(self, lembrete_id, usuario_id, dados):
        clausula, valores = _montar_set(dados, CAMPOS_LEMBRETE)
        if not clausula:
            return self.buscar_lembrete(lembrete_id, usuario_id)
        return self.fetch_one(f"""
            UPDATE lembretes_pagamento SET {clausula}, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s
            RETURNING *
        """, valores + [lembrete_id, usuario_id])

    def excluir_lembrete(self, lembrete_id, usuario_id):
        # Logs referenciam o lembrete: desativa em vez de apagar quando houver histórico
        with self.conexao() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1 FROM logs_lembrete WHERE lembrete_id = %s LIMIT 1", (lembrete_id,))
                if cursor.fetchone():
                    cursor.execute(
                        "UPDATE lembretes_pagamento SET ativo = FALSE WHERE id = %s AND usuario_id = %s",
                        (lembrete_id, usuario_id)
                    )
                else:
                    cursor.execute(
                        "DELETE FROM lembretes_pagamento WHERE id = %s AND usuario_id = %s",
                        (lembrete_id, usuario_id)
                    )
                return cursor.rowcount

    # -------------------------
    # LOGS DE LEMBRETE
    # -------------------------
    def existe_log_lembrete_no_dia(self, lembrete_id, conta_receber_id, dia):
        """Verifica se já houve tentativa deste lembrete para a conta no dia (horário de Brasília)"""
        resultado = self.fetch_one("""
            SELECT id FROM logs_lembrete
            WHERE lembrete_id = %s
              AND conta_receber_id = %s
              AND (criado_em AT TIME ZONE 'America/Sao_Paulo')::date = %s
            LIMIT 1
        """, (lembrete_id, conta_receber_id, dia))
        return resultado is not None

    def criar_log_lembrete(self, lembrete_id, conta_receber_id, cliente_id, mensagem, status,
                           erro=None, enviado_em=None, criado_em=None):
        return self.fetch_one("""
            INSERT INTO logs_lembrete
            (lembrete_id, conta_receber_id, cliente_id, mensagem, status, erro, enviado_em, criado_em)
            VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, CURRENT_TIMESTAMP))
            RETURNING *
        """, (lembrete_id, conta_receber_id, cliente_id, mensagem, status, erro, enviado_em, criado_em))

    def listar_logs_lembrete(self, usuario_id, limit=100):
        return self.fetch_all("""
            SELECT l.*, lp.nome AS lembrete_nome, r.descricao AS conta_descricao, c.nome AS cliente_nome
            FROM logs_lembrete l
            JOIN lembretes_pagamento lp ON lp.id = l.lembrete_id
            LEFT JOIN contas_receber r ON r.id = l.conta_receber_id
            LEFT JOIN clientes c ON c.id = l.cliente_id
            WHERE lp.usuario_id = %s
            ORDER BY l.criado_em DESC
            LIMIT %s
        """, (usuario_id, limit))

    # -------------------------
    # PLANOS E ASSINATURAS
    # -------------------------
    def listar_planos(self, apenas_ativos=True):
        where = "WHERE ativo = TRUE" if apenas_ativos else ""
        return self.fetch_all(f"SELECT * FROM planos {where} ORDER BY preco")

    def buscar_plano_ativo_usuario(self, usuario_id):
        return self.fetch_one("""
            SELECT p.* FROM assinaturas_usuario a
            JOIN planos p ON p.id = a.plano_id
            WHERE a.usuario_id = %s AND a.ativa = TRUE
            ORDER BY a.inicio DESC
            LIMIT 1
        """, (usuario_id,))

    def contar_uso(self, usuario_id):
        return self.fetch_one("""
            SELECT
                (SELECT COUNT(*) FROM clientes WHERE usuario_id = %s) AS clientes,
                (SELECT COUNT(*) FROM contas_receber WHERE usuario_id = %s) AS contas_receber,
                (SELECT COUNT(*) FROM contas_pagar WHERE usuario_id = %s) AS contas_pagar
        """, (usuario_id, usuario_id, usuario_id))

    def verificar_limite_plano(self, usuario_id, tipo='max_transacoes', adicionais=1):
        """Retorna {'pode_criar', 'atual', 'maximo'}; sem plano ativo não há limite"""
        plano = self.buscar_plano_ativo_usuario(usuario_id)
        if not plano:
            return {'pode_criar': True, 'atual': 0, 'maximo': -1}

        uso = self.contar_uso(usuario_id)
        if tipo == 'max_clientes':
            atual = int(uso['clientes'])
        else:
            atual = int(uso['contas_receber']) + int(uso['contas_pagar'])
        maximo = int(plano[tipo])
        pode_criar = maximo == -1 or atual + adicionais <= maximo
        return {'pode_criar': pode_criar, 'atual': atual, 'maximo': maximo}

    def _obter_ou_criar_cliente_sistema(self, cursor, usuario):
        """Cliente técnico do próprio usuário, usado para a mensalidade do plano"""
        cursor.execute(
            "SELECT id FROM clientes WHERE usuario_id = %s AND documento = %s LIMIT 1",
            (usuario['usuario_id'], DOCUMENTO_CLIENTE_SISTEMA)
        )
        existente = cursor.fetchone()
        if existente:
            return existente['id']

        nome = f"{usuario.get('nome') or ''} {usuario.get('sobrenome') or ''}".strip() or usuario.get('username')
        cursor.execute("""
            INSERT INTO clientes (usuario_id, nome, whatsapp, documento, email, endereco, cidade, estado)
            VALUES (%s, %s, %s, %s, %s, 'Cobrança de Plano', 'Sistema', 'Sistema')
            RETURNING id
        """, (usuario['usuario_id'], nome, usuario.get('telefone') or '', DOCUMENTO_CLIENTE_SISTEMA,
              usuario.get('email')))
        return cursor.fetchone()['id']

    def gerar_cobrancas_mensais_planos(self, hoje):
        """Gera a mensalidade do próximo mês para cada assinatura ativa paga"""
        proximo_mes = adicionar_meses(date(hoje.year, hoje.month, 1), 1)
        fim_proximo_mes = adicionar_meses(proximo_mes, 1)
        vencimento = date(proximo_mes.year, proximo_mes.month, 5)
        criadas = 0

        with self.conexao() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute("""
                    SELECT a.id AS assinatura_id, u.id AS usuario_id, u.username, u.nome, u.sobrenome,
                           u.telefone, u.email, p.nome AS plano_nome, p.preco
                    FROM assinaturas_usuario a
                    JOIN usuarios u ON u.id = a.usuario_id
                    JOIN planos p ON p.id = a.plano_id
                    WHERE a.ativa = TRUE
                """)
                assinaturas = cursor.fetchall()

                for assinatura in assinaturas:
                    # Planos gratuitos não geram cobrança
                    if assinatura['preco'] is None or assinatura['preco'] <= 0:
                        continue

                    cliente_id = self._obter_ou_criar_cliente_sistema(cursor, assinatura)

                    cursor.execute("""
                        SELECT id FROM contas_receber
                        WHERE usuario_id = %s AND cliente_id = %s
                          AND tipo = 'recurring' AND status = 'pending'
                          AND vencimento >= %s AND vencimento < %s
                        LIMIT 1
                    """, (assinatura['usuario_id'], cliente_id, proximo_mes, fim_proximo_mes))
                    if cursor.fetchone():
                        continue

                    cursor.execute("""
                        INSERT INTO contas_receber
                        (usuario_id, cliente_id, descricao, valor, vencimento, status, tipo, numero_parcela, total_parcelas)
                        VALUES (%s, %s, %s, %s, %s, 'pending', 'recurring', 1, 12)
                    """, (assinatura['usuario_id'], cliente_id,
                          f"Mensalidade do Plano {assinatura['plano_nome']}",
                          assinatura['preco'], vencimento))
                    criadas += 1

        logger.info(f"Cobranças mensais geradas: {criadas} (vencimento {vencimento})")
        return criadas

    # -------------------------
    # VENDAS PARCELADAS
    # -------------------------
    def listar_vendas_parceladas(self, usuario_id):
        return self.fetch_all("""
            SELECT v.*, c.nome AS cliente_nome, c.whatsapp AS cliente_whatsapp
            FROM vendas_parceladas v
            LEFT JOIN clientes c ON c.id = v.cliente_id
            WHERE v.usuario_id = %s
            ORDER BY v.criado_em DESC
        """, (usuario_id,))

    def buscar_venda_parcelada(self, venda_id, usuario_id):
        return self.fetch_one("""
            SELECT v.*, c.nome AS cliente_nome, c.whatsapp AS cliente_whatsapp
            FROM vendas_parceladas v
            LEFT JOIN clientes c ON c.id = v.cliente_id
            WHERE v.id = %s AND v.usuario_id = %s
        """, (venda_id, usuario_id))

    def buscar_venda_por_token(self, token):
        return self.fetch_one("""
            SELECT v.*, c.nome AS cliente_nome, c.whatsapp AS cliente_whatsapp,
                   u.nome AS vendedor_nome, u.sobrenome AS vendedor_sobrenome
            FROM vendas_parceladas v
            LEFT JOIN clientes c ON c.id = v.cliente_id
            LEFT JOIN usuarios u ON u.id = v.usuario_id
            WHERE v.token_confirmacao = %s
        """, (token,))

    def criar_venda_parcelada(self, usuario_id, cliente_id, descricao, valor_total, quantidade_parcelas,
                              valor_parcela, primeiro_vencimento, token, observacoes=None):
        return self.fetch_one("""
            INSERT INTO vendas_parceladas
            (usuario_id, cliente_id, descricao, valor_total, quantidade_parcelas, valor_parcela,
             primeiro_vencimento, token_confirmacao, status, observacoes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
        """, (usuario_id, cliente_id, descricao, valor_total, quantidade_parcelas, valor_parcela,
              primeiro_vencimento, token, VENDA_PENDENTE, observacoes))

    def confirmar_venda_por_token(self, token, foto_documento_url, assinado_em):
        """pending -> confirmed; retorna None se o token não existe ou a venda não está pendente"""
        return self.fetch_one("""
            UPDATE vendas_parceladas
            SET status = %s, foto_documento_url = %s, cliente_assinou_em = %s, atualizado_em = CURRENT_TIMESTAMP
            WHERE token_confirmacao = %s AND status = %s
            RETURNING *
        """, (VENDA_CONFIRMADA, foto_documento_url, assinado_em, token, VENDA_PENDENTE))

    def aprovar_venda_e_gerar_parcelas(self, venda_id, usuario_id, parcelas, aprovado_em, observacoes=None):
        """
        confirmed -> approved e criação das parcelas na MESMA transação.
        Retorna None (sem alterar nada) se a venda não estiver mais em 'confirmed'.
        """
        with self.conexao() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute("""
                    UPDATE vendas_parceladas
                    SET status = %s, usuario_revisou_em = %s, usuario_aprovou_em = %s,
                        observacoes = COALESCE(%s, observacoes), atualizado_em = CURRENT_TIMESTAMP
                    WHERE id = %s AND usuario_id = %s AND status = %s
                    RETURNING *
                """, (VENDA_APROVADA, aprovado_em, aprovado_em, observacoes, venda_id, usuario_id, VENDA_CONFIRMADA))
                venda = cursor.fetchone()
                if not venda:
                    return None

                for parcela in parcelas:
                    cursor.execute("""
                        INSERT INTO contas_receber
                        (usuario_id, cliente_id, descricao, valor, vencimento, status, tipo,
                         numero_parcela, total_parcelas, parent_id)
                        VALUES (%s, %s, %s, %s, %s, 'pending', 'installment', %s, %s, %s)
                    """, (usuario_id, venda['cliente_id'], parcela.descricao, parcela.valor, parcela.vencimento,
                          parcela.numero, parcela.total, venda_id))

                logger.info(f"Venda {venda_id} aprovada com {len(parcelas)} parcelas")
                return dict(venda)

    def rejeitar_venda(self, venda_id, usuario_id, observacoes, revisado_em):
        """confirmed -> rejected; retorna None se a venda não estiver em 'confirmed'"""
        return self.fetch_one("""
            UPDATE vendas_parceladas
            SET status = %s, observacoes = %s, usuario_revisou_em = %s, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s AND status = %s
            RETURNING *
        """, (VENDA_REJEITADA, observacoes, revisado_em, venda_id, usuario_id, VENDA_CONFIRMADA))

    def regenerar_token_venda(self, venda_id, usuario_id, novo_token):
        """Reabre a venda com novo token; vendas aprovadas não são reabertas"""
        return self.fetch_one("""
            UPDATE vendas_parceladas
            SET token_confirmacao = %s, status = %s, foto_documento_url = NULL,
                cliente_assinou_em = NULL, usuario_revisou_em = NULL, atualizado_em = CURRENT_TIMESTAMP
            WHERE id = %s AND usuario_id = %s AND status <> %s
            RETURNING *
        """, (novo_token, VENDA_PENDENTE, venda_id, usuario_id, VENDA_APROVADA))

    def excluir_venda_parcelada(self, venda_id, usuario_id):
        return self.execute_query(
            "DELETE FROM vendas_parceladas WHERE id = %s AND usuario_id = %s AND status <> %s",
            (venda_id, usuario_id, VENDA_APROVADA)
        )

    # -------------------------
    # INSTÂNCIAS WHATSAPP
    # -------------------------
    def buscar_instancia_whatsapp_ativa(self, usuario_id):
        return self.fetch_one("""
            SELECT * FROM instancias_whatsapp
            WHERE usuario_id = %s AND ativa = TRUE
            ORDER BY criado_em DESC
            LIMIT 1
        """, (usuario_id,))
