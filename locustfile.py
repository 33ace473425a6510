import httpx
from locust import User, task, between
from websocket import create_connection

from coinduel.core.rng import rng
from coinduel.core.security import SESSION_COOKIE, sign_session


class WebSocketUser(User):
    wait_time = between(1, 2)
    host = "http://127.0.0.1:3000"

    def on_start(self):
        """
        Called when a Locust user starts.
        Signs a session for a throwaway user and opens a websocket.
        The server must share this process's SECRET_KEY.
        """
        self.client = httpx.Client(base_url=self.host)

        try:
            response = self.client.get("/health")
        except httpx.RequestError as e:
            print(f"Health check failed during connection: {e}")
            self.environment.runner.quit()
            return

        if response.status_code != 200:
            print(f"Server not healthy. Got {response.status_code}. Response: {response.text}")
            self.environment.runner.quit()
            return

        self.username = f"load-{rng.token(4)}"
        cookie_header = f"{SESSION_COOKIE}={sign_session(self.username)}"
        ws_url = self.host.replace("http", "ws", 1) + "/ws"

        # Establish WebSocket connection with cookie
        try:
            self.ws = create_connection(ws_url, header={"Cookie": cookie_header})
            self.ws.recv()  # connected
        except Exception as e:
            print(f"Failed to connect to WebSocket: {e}")
            self.environment.runner.quit()

    def on_stop(self):
        """
        Called when a Locust user stops.
        Closes the websocket connection and the httpx client.
        """
        if hasattr(self, 'ws'):
            self.ws.close()
        if hasattr(self, 'client'):
            self.client.close()

    @task(3)
    def send_ping(self):
        """
        Sends a ping message to the websocket and waits for a pong response.
        """
        if not hasattr(self, 'ws'):
            return

        try:
            self.ws.send('{"type":"ping"}')
            # The orjson library used by the server sends bytes
            while self.ws.recv() != b'{"type":"pong"}':
                pass  # lobby traffic
        except Exception as e:
            # If the connection is broken, stop this user.
            print(f"WebSocket error during ping: {e}")
            self.environment.runner.stop()

    @task
    def browse_lobby(self):
        """Join the lobby and leave it again."""
        if not hasattr(self, 'ws'):
            return

        try:
            self.ws.send('{"type":"join_lobby"}')
            self.ws.send('{"type":"cancel_search"}')
            # Skip announcements from other users until our own replies arrive
            seen = set()
            while not {"lobby_joined", "search_cancelled"} <= seen:
                frame = self.ws.recv()
                for event in ("lobby_joined", "search_cancelled"):
                    if f'"type":"{event}"'.encode() in frame:
                        seen.add(event)
        except Exception as e:
            print(f"WebSocket error in lobby: {e}")
            self.environment.runner.stop()
