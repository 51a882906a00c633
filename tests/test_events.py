# tests/test_events.py
import asyncio
import threading

from bookflow.events import EventChannel, EventKind


class TestEmit:

    def test_emit_guarda_historial(self):
        channel = EventChannel()
        channel.emit(EventKind.WORKFLOW_STARTED, book_id="b1")
        channel.emit(EventKind.WORKFLOW_COMPLETED, book_id="b1")

        kinds = [e.kind for e in channel.history()]
        assert kinds == [EventKind.WORKFLOW_STARTED, EventKind.WORKFLOW_COMPLETED]

    def test_historial_filtrado_por_tipo(self):
        channel = EventChannel()
        channel.emit(EventKind.STAGE_STARTED, stage="acquisition")
        channel.emit(EventKind.WORKFLOW_ERROR, error="x")

        errors = channel.history(EventKind.WORKFLOW_ERROR)
        assert [e.payload for e in errors] == [{"error": "x"}]

    def test_historial_acotado(self):
        channel = EventChannel(history_size=3)
        for i in range(5):
            channel.emit(EventKind.STAGE_STARTED, index=i)
        assert [e.payload["index"] for e in channel.history()] == [2, 3, 4]

    def test_el_valor_del_tipo_es_el_nombre_del_evento(self):
        assert EventKind.HUMAN_FEEDBACK_REQUESTED.value == "human_feedback_requested"


class TestListeners:

    def test_listener_recibe_cada_evento(self):
        channel  = EventChannel()
        received = []
        channel.add_listener(received.append)

        channel.emit(EventKind.WORKFLOW_PAUSED, book_id="b1")

        assert len(received) == 1
        assert received[0].payload == {"book_id": "b1"}

    def test_listener_que_falla_no_corta_la_entrega(self):
        channel  = EventChannel()
        received = []

        def broken(event):
            raise RuntimeError("listener roto")

        channel.add_listener(broken)
        channel.add_listener(received.append)
        channel.emit(EventKind.WORKFLOW_RESUMED)

        assert len(received) == 1


class TestSubscribers:

    def test_cola_recibe_eventos_en_orden(self):
        async def scenario():
            channel = EventChannel()
            queue   = channel.subscribe()
            channel.emit(EventKind.STAGE_STARTED)
            channel.emit(EventKind.STAGE_COMPLETED)
            return [queue.get_nowait().kind, queue.get_nowait().kind]

        assert asyncio.run(scenario()) == [EventKind.STAGE_STARTED, EventKind.STAGE_COMPLETED]

    def test_cola_llena_descarta_el_mas_antiguo(self):
        async def scenario():
            channel = EventChannel(queue_size=2)
            queue   = channel.subscribe()
            for i in range(4):
                channel.emit(EventKind.STAGE_STARTED, index=i)
            return [queue.get_nowait().payload["index"] for _ in range(queue.qsize())]

        assert asyncio.run(scenario()) == [2, 3]

    def test_unsubscribe_deja_de_recibir(self):
        async def scenario():
            channel = EventChannel()
            queue   = channel.subscribe()
            channel.unsubscribe(queue)
            channel.emit(EventKind.STAGE_STARTED)
            return queue.qsize()

        assert asyncio.run(scenario()) == 0

    def test_emit_desde_otro_hilo_se_entrega_en_el_loop(self):
        async def scenario():
            channel = EventChannel()
            channel.bind(asyncio.get_running_loop())
            queue = channel.subscribe()

            thread = threading.Thread(
                target=channel.emit, args=(EventKind.HUMAN_FEEDBACK_RECEIVED,), kwargs={"count": 1},
            )
            thread.start()
            event = await asyncio.wait_for(queue.get(), timeout=1)
            thread.join()
            return event

        event = asyncio.run(scenario())
        assert event.payload == {"count": 1}
