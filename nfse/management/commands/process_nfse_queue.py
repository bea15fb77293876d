from django.core.management.base import BaseCommand, CommandError

from nfse.sefin.errors import ConfigurationError
from nfse.sefin.factory import build_pipeline


class Command(BaseCommand):
    help = 'Processa a fila de emissão de NFS-e (recupera travados, reenfileira falhas, emite e limpa)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Máximo de itens a processar neste ciclo (padrão: tamanho do lote configurado)',
        )
        parser.add_argument(
            '--health',
            action='store_true',
            help='Apenas exibe a saúde da fila, sem processar',
        )

    def handle(self, *args, **options):
        try:
            pipeline = build_pipeline()
        except ConfigurationError as exc:
            raise CommandError(str(exc)) from exc

        if options['health']:
            health = pipeline.queue.get_queue_health()
            style = {
                'healthy': self.style.SUCCESS,
                'warning': self.style.WARNING,
            }.get(health['status'], self.style.ERROR)
            self.stdout.write(style(f"Fila NFS-e: {health['status']}"))
            self.stdout.write(
                f"Pendentes: {health['backlog']} | Travados: {health['stuck']} | "
                f"Taxa de falhas: {health['failure_rate']}%"
            )
            for issue in health['issues']:
                self.stdout.write(f'  - {issue}')
            for recommendation in health['recommendations']:
                self.stdout.write(f'  > {recommendation}')
            return

        cycle = pipeline.automation.run_cycle(options['limit'])
        if cycle.paused:
            self.stdout.write(self.style.WARNING('Fila pausada; nenhum item processado'))

        self.stdout.write(
            f'Recuperados: {cycle.reset} | Reenfileirados: {cycle.retried} | '
            f'Processados: {cycle.processed} | Removidos: {cycle.purged}'
        )
        for error in cycle.errors:
            self.stdout.write(self.style.ERROR(f'Erro: {error}'))

        if cycle.failed:
            self.stdout.write(self.style.WARNING(f'{cycle.completed} concluídos, {cycle.failed} com falha'))
        else:
            self.stdout.write(self.style.SUCCESS(f'{cycle.completed} concluídos'))
